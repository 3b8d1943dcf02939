#!/usr/bin/env python3
"""
Health check for the Citrix Monitor bridge.

Validates environment variables are set and tests OData connectivity.

Usage:
    python3 monitor_check.py            # On-premises Delivery Controller(s)
    python3 monitor_check.py --cloud    # Citrix Cloud tenant
"""

import os
import sys
import json

sys.path.insert(0, __file__.rsplit("/", 1)[0])
from monitor_client import MonitorClient

ONPREM_VARS = ["CITRIX_DDC"]
CLOUD_VARS = ["CITRIX_CUSTOMER_ID", "CITRIX_CLIENT_ID", "CITRIX_CLIENT_SECRET"]


def check(cloud: bool = False) -> dict:
    """Run health checks and return the report."""
    checks = {"mode": "cloud" if cloud else "on-premises"}

    required_vars = CLOUD_VARS if cloud else ONPREM_VARS
    env_status = {}
    all_set = True
    for var in required_vars:
        if os.getenv(var, ""):
            env_status[var] = "set"
        else:
            env_status[var] = "MISSING"
            all_set = False
    checks["environment"] = env_status

    if not all_set:
        checks["api_connection"] = {"ok": False, "error": "Missing environment variables"}
        return checks

    client = MonitorClient(cloud=cloud)
    checks["api_connection"] = client.test_connection()

    if checks["api_connection"].get("ok"):
        try:
            records = client.query("Machines", top=1)
            checks["permission_test"] = {
                "ok": True,
                "test": "Machines read",
                "result": f"Read {len(records)} machine record(s)",
            }
        except Exception as e:
            checks["permission_test"] = {"ok": False, "test": "Machines read", "error": str(e)}

    return checks


if __name__ == "__main__":
    report = check(cloud="--cloud" in sys.argv)
    print(json.dumps(report, indent=2))
    sys.exit(0 if report["api_connection"].get("ok") else 1)
