"""
Citrix Monitor Service OData Client

Read-only access to the Monitor Service data feed (the data behind
Citrix Director) for an on-premises site or a Citrix Cloud (DaaS) tenant,
with pagination, rate-limit handling and, for cloud, automatic token
refresh.

Addressing:
  On-premises  {scheme}://{ddc}/Citrix/Monitor/OData/v{3|4}/Data
               CITRIX_DDC may list several Delivery Controllers; the first
               one that answers the service document is used.
  Cloud        https://{customer}.xendesktop.net/Citrix/Monitor/OData/v4/Data
               Authorization: CwsAuth Bearer=<token>

Cloud authentication uses the Citrix Cloud API client flow:
  - POST client_id + client_secret to {api}/cctrustoauth2/{customer}/tokens/clients
  - Tokens are valid for ~1 hour
  - Tokens are cached and auto-refreshed 5 minutes before expiry

Environment variables:
  CITRIX_DDC            - Delivery Controller(s), comma separated (on-prem)
  CITRIX_ODATA_SCHEME   - http or https (on-prem, default http)
  CITRIX_ODATA_VERSION  - 3 or 4 (default 4, cloud is always 4)
  CITRIX_USERNAME       - Director read-only account (on-prem, optional)
  CITRIX_PASSWORD       - Password for CITRIX_USERNAME
  CITRIX_CUSTOMER_ID    - Citrix Cloud customer ID
  CITRIX_CLIENT_ID      - Citrix Cloud API client ID
  CITRIX_CLIENT_SECRET  - Citrix Cloud API client secret
  CITRIX_API_BASE       - Citrix Cloud API host (default https://api-us.cloud.com)
"""

import os
import sys
import json
import time
from datetime import datetime
from pathlib import Path

import requests
from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parents[2] / ".env")

DDC = os.getenv("CITRIX_DDC", "")
ODATA_SCHEME = os.getenv("CITRIX_ODATA_SCHEME", "http")
ODATA_VERSION = int(os.getenv("CITRIX_ODATA_VERSION", "4") or 4)
USERNAME = os.getenv("CITRIX_USERNAME", "")
PASSWORD = os.getenv("CITRIX_PASSWORD", "")
CUSTOMER_ID = os.getenv("CITRIX_CUSTOMER_ID", "")
CLIENT_ID = os.getenv("CITRIX_CLIENT_ID", "")
CLIENT_SECRET = os.getenv("CITRIX_CLIENT_SECRET", "")
API_BASE = os.getenv("CITRIX_API_BASE", "https://api-us.cloud.com")

ONPREM_BASE_TEMPLATE = "{scheme}://{ddc}/Citrix/Monitor/OData/v{version}/Data"
CLOUD_BASE_TEMPLATE = "https://{customer}.xendesktop.net/Citrix/Monitor/OData/v4/Data"
TOKEN_URL_TEMPLATE = "{api}/cctrustoauth2/{customer}/tokens/clients"

TOKEN_REFRESH_BUFFER_SECS = 300
NEXT_LINK_KEYS = ("@odata.nextLink", "odata.nextLink")
SIBILANT_ENDINGS = ("s", "x", "z", "ch", "sh")
ES_PLURAL_ENDINGS = ("sses", "xes", "zes", "ches", "shes")


def plural(name: str) -> str:
    """Entity set name for an entity: Session -> Sessions, Process -> Processes."""
    if len(name) > 1 and name.endswith("y") and name[-2].lower() not in "aeiou":
        return name[:-1] + "ies"
    if name.endswith(SIBILANT_ENDINGS):
        return name + "es"
    return name + "s"


def singular(name: str) -> str:
    """Entity name for an entity set: Sessions -> Session, Processes -> Process."""
    if name.endswith("ies"):
        return name[:-3] + "y"
    if name.endswith(ES_PLURAL_ENDINGS):
        return name[:-2]
    if name.endswith("s") and not name.endswith("ss"):
        return name[:-1]
    return name


def date_filter(field: str, since: datetime = None, until: datetime = None, version: int = 4) -> str:
    """Build an OData $filter clause bounding `field` to a date window."""

    def literal(value: datetime) -> str:
        stamp = value.strftime("%Y-%m-%dT%H:%M:%S")
        if version == 3:
            return f"datetime'{stamp}'"
        return f"{stamp}Z"

    clauses = []
    if since:
        clauses.append(f"{field} ge {literal(since)}")
    if until:
        clauses.append(f"{field} le {literal(until)}")
    return " and ".join(clauses)


class MonitorClient:
    """Citrix Monitor Service OData client (on-premises or Citrix Cloud)."""

    def __init__(
        self,
        cloud: bool = False,
        ddc: str = None,
        version: int = None,
        scheme: str = None,
        customer_id: str = None,
        client_id: str = None,
        client_secret: str = None,
        auth=None,
    ):
        self.cloud = cloud
        self.version = 4 if cloud else (version or ODATA_VERSION)
        self.scheme = scheme or ODATA_SCHEME
        self.controllers = [c.strip() for c in (ddc or DDC).split(",") if c.strip()]
        self.customer_id = customer_id or CUSTOMER_ID
        self.client_id = client_id or CLIENT_ID
        self.client_secret = client_secret or CLIENT_SECRET

        if cloud and not all([self.customer_id, self.client_id, self.client_secret]):
            print(
                "ERROR: Missing Citrix Cloud credentials.\n"
                "\n"
                "Required environment variables:\n"
                "  CITRIX_CUSTOMER_ID\n"
                "  CITRIX_CLIENT_ID\n"
                "  CITRIX_CLIENT_SECRET\n"
                "\n"
                "Create a Secure Client under Identity and Access Management\n"
                "in the Citrix Cloud console.\n",
                file=sys.stderr,
            )
            sys.exit(1)

        if not cloud and not self.controllers:
            print(
                "ERROR: Missing Delivery Controller.\n"
                "\n"
                "Set CITRIX_DDC (comma separated for several controllers)\n"
                "or pass --ddc.\n",
                file=sys.stderr,
            )
            sys.exit(1)

        self._access_token = None
        self._token_expires_at = 0
        self._base_url = None
        self._entity_sets = None
        self.session = requests.Session()
        if auth is not None:
            self.session.auth = auth
        elif not cloud and USERNAME:
            self.session.auth = (USERNAME, PASSWORD)

    # ── Addressing ─────────────────────────────────────────────────────

    def _controller_url(self, controller: str) -> str:
        return ONPREM_BASE_TEMPLATE.format(
            scheme=self.scheme, ddc=controller, version=self.version
        )

    @property
    def base_url(self) -> str:
        """OData service root, probing Delivery Controllers on first use."""
        if self._base_url:
            return self._base_url

        if self.cloud:
            self._base_url = CLOUD_BASE_TEMPLATE.format(customer=self.customer_id)
            return self._base_url

        if len(self.controllers) == 1:
            self._base_url = self._controller_url(self.controllers[0])
            return self._base_url

        for controller in self.controllers:
            url = self._controller_url(controller)
            try:
                resp = self.session.get(
                    url, headers=self._auth_headers(), params=self._format_params(), timeout=15
                )
            except requests.RequestException as e:
                print(f"  {controller} unreachable: {e}", file=sys.stderr)
                continue
            if resp.status_code == 200:
                self._base_url = url
                return self._base_url
            print(f"  {controller} answered {resp.status_code}, trying next", file=sys.stderr)

        raise requests.ConnectionError(
            f"No Delivery Controller answered: {', '.join(self.controllers)}"
        )

    def _format_params(self) -> dict:
        return {"$format": "json"} if self.version == 3 else {}

    # ── Citrix Cloud Token Management ──────────────────────────────────

    def _get_token(self) -> str:
        """Obtain or refresh the Citrix Cloud bearer token."""
        now = time.time()
        if self._access_token and now < self._token_expires_at:
            return self._access_token

        token_url = TOKEN_URL_TEMPLATE.format(api=API_BASE, customer=self.customer_id)
        resp = requests.post(
            token_url,
            data={
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
            timeout=30,
        )

        if resp.status_code != 200:
            print(
                f"ERROR: Token request failed ({resp.status_code}): {resp.text}",
                file=sys.stderr,
            )
            sys.exit(1)

        token_data = resp.json()
        self._access_token = token_data["access_token"]
        expires_in = int(token_data.get("expires_in", 3600))
        self._token_expires_at = now + expires_in - TOKEN_REFRESH_BUFFER_SECS

        return self._access_token

    def _auth_headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self.cloud:
            headers["Authorization"] = f"CwsAuth Bearer={self._get_token()}"
            headers["Citrix-CustomerId"] = self.customer_id
        return headers

    # ── Core HTTP Methods ──────────────────────────────────────────────

    def _request(self, method: str, endpoint: str, **kwargs) -> requests.Response:
        """Make an OData request with auth, rate-limit retry, and token refresh."""
        url = endpoint if endpoint.startswith("http") else f"{self.base_url}/{endpoint.lstrip('/')}"
        max_retries = 3

        for attempt in range(max_retries):
            kwargs["headers"] = self._auth_headers()
            resp = self.session.request(method, url, timeout=120, **kwargs)

            if resp.status_code == 429:
                retry_after = int(resp.headers.get("Retry-After", 10))
                print(f"  Rate limited. Waiting {retry_after}s...", file=sys.stderr)
                time.sleep(retry_after)
                continue

            if resp.status_code == 401 and self.cloud:
                self._access_token = None
                self._token_expires_at = 0
                continue

            return resp

        return resp

    def get(self, endpoint: str, params: dict = None) -> requests.Response:
        merged = self._format_params()
        merged.update(params or {})
        return self._request("GET", endpoint, params=merged or None)

    # ── Pagination Helper ──────────────────────────────────────────────

    def get_all(self, endpoint: str, params: dict = None, max_pages: int = 500) -> list:
        """
        Paginate through every page of an entity set.

        Follows @odata.nextLink (v4) or odata.nextLink (v3). A failing page
        raises requests.HTTPError rather than returning a partial result.
        """
        results = []
        url = endpoint

        for _ in range(max_pages):
            if url.startswith("http"):
                # v3 next links do not always carry $format=json
                extra = self._format_params() if "format=json" not in url.lower() else {}
                resp = self._request("GET", url, params=extra or None)
            else:
                resp = self.get(url, params=params)
            if resp.status_code != 200:
                print(f"  Error fetching {url}: {resp.status_code} {resp.text[:200]}", file=sys.stderr)
            resp.raise_for_status()

            data = resp.json()
            results.extend(data.get("value", []))

            next_link = next((data[k] for k in NEXT_LINK_KEYS if data.get(k)), None)
            if not next_link:
                break
            url = next_link

        return results

    # ── Collections ────────────────────────────────────────────────────

    def list_collections(self) -> list:
        """Entity set names from the OData service document."""
        resp = self.get("")
        resp.raise_for_status()
        entries = resp.json().get("value", [])
        return sorted(e.get("name") or e.get("url") for e in entries if e.get("name") or e.get("url"))

    def entity_set(self, name: str) -> str:
        """
        Map an entity name to the entity set that holds it.

        Identifier fields name the entity (SessionKey -> Session, CatalogId ->
        Catalog) while the feed exposes plural sets (Sessions, Catalogs).
        The service document is consulted once; without it the plural is
        guessed.
        """
        if self._entity_sets is None:
            try:
                self._entity_sets = {n.lower(): n for n in self.list_collections()}
            except (requests.RequestException, ValueError) as e:
                print(f"  Service document unavailable ({e}), guessing set names", file=sys.stderr)
                self._entity_sets = {}

        guess = plural(name)
        for candidate in (name, guess):
            if candidate.lower() in self._entity_sets:
                return self._entity_sets[candidate.lower()]
        return guess

    def fetch_collection(self, name: str) -> list:
        """Every record of a collection (entity or set name), unfiltered."""
        return self.get_all(self.entity_set(name))

    def query(
        self,
        collection: str,
        filter_expr: str = None,
        select: str = None,
        orderby: str = None,
        top: int = None,
    ) -> list:
        """Query a collection with optional $filter / $select / $orderby / $top."""
        params = {}
        if filter_expr:
            params["$filter"] = filter_expr
        if select:
            params["$select"] = select
        if orderby:
            params["$orderby"] = orderby
        if top:
            params["$top"] = top
            return self.get_all(collection, params=params, max_pages=1)[:top]
        return self.get_all(collection, params=params)

    # ── Health Check ───────────────────────────────────────────────────

    def test_connection(self) -> dict:
        """Health check: read the service document."""
        try:
            collections = self.list_collections()
            return {
                "ok": True,
                "mode": "cloud" if self.cloud else "on-premises",
                "base_url": self.base_url,
                "odata_version": self.version,
                "collections": len(collections),
            }
        except requests.HTTPError as e:
            return {
                "ok": False,
                "error": str(e),
                "status": getattr(e.response, "status_code", None),
            }
        except Exception as e:
            return {"ok": False, "error": str(e)}


# ── CLI Entrypoint ─────────────────────────────────────────────────────

if __name__ == "__main__":
    action = sys.argv[1] if len(sys.argv) > 1 else "test"
    cloud = "--cloud" in sys.argv
    client = MonitorClient(cloud=cloud)

    if action == "test":
        print(json.dumps(client.test_connection(), indent=2))

    elif action == "collections":
        names = client.list_collections()
        print(f"Collections: {len(names)}")
        for name in names:
            print(f"  {name}")

    else:
        print(f"Unknown action: {action}")
        print("Usage: python3 monitor_client.py [test|collections] [--cloud]")
        sys.exit(1)
