#!/usr/bin/env python3
"""
Citrix Monitor Bridge -- Query CLI

Read-only queries against the Monitor Service OData feed, with optional
reference resolution: identifier fields (SessionKey, MachineId,
CurrentConnectionId, ...) are joined against their collections and
replaced by namespaced columns (Session.UserId, Machine.Name, ...).

Usage:
  python3 monitor_query.py collections [--format json|table]
  python3 monitor_query.py query Sessions --hours 24 --resolve --format table
  python3 monitor_query.py query Connections --from 2026-10-01 --to 2026-10-02 --output conns.csv
  python3 monitor_query.py query Machines --filter "LifecycleState eq 0" --select Id,Name,CatalogId
  python3 monitor_query.py --cloud query Sessions --top 50

Global options:
  --cloud                 Query Citrix Cloud instead of an on-prem controller
  --ddc HOST[,HOST]       Delivery Controller(s), overrides CITRIX_DDC
  --odata-version 3|4     Monitor OData version (on-prem only)
"""

import argparse
import csv
import io
import json
import sys
import os
from datetime import datetime, timedelta

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
from monitor_client import MonitorClient, date_filter, singular
from monitor_resolver import ResolutionContext, expand_all

DATE_FORMATS = ("%Y-%m-%d", "%Y-%m-%dT%H:%M", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M")


# -- Output Formatters --

def to_table_data(records: list) -> dict:
    """Rows plus the ordered union of their columns."""
    columns = {}
    for record in records:
        for field in record:
            columns.setdefault(field, None)
    return {
        "columns": list(columns),
        "rows": records,
        "row_count": len(records),
    }


def fmt_json(data: dict, stream=None):
    print(json.dumps(data["rows"], indent=2, default=str), file=stream or sys.stdout)


def fmt_table(data: dict, stream=None):
    stream = stream or sys.stdout
    columns = data.get("columns", [])
    rows = data.get("rows", [])
    if not columns:
        print("(no results)", file=stream)
        return

    col_widths = {c: len(c) for c in columns}
    for row in rows:
        for c in columns:
            val = "" if row.get(c) is None else str(row.get(c))
            col_widths[c] = max(col_widths[c], min(len(val), 40))

    header = " | ".join(c.ljust(col_widths[c])[:40] for c in columns)
    sep = "-+-".join("-" * min(col_widths[c], 40) for c in columns)
    print(header, file=stream)
    print(sep, file=stream)
    for row in rows:
        line = " | ".join(
            ("" if row.get(c) is None else str(row.get(c))).ljust(col_widths[c])[:40]
            for c in columns
        )
        print(line, file=stream)

    print(f"\n({data.get('row_count', 0)} rows)", file=stream)


def fmt_csv(data: dict, stream=None):
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=data.get("columns", []), extrasaction="ignore")
    writer.writeheader()
    writer.writerows(data.get("rows", []))
    print(output.getvalue(), end="", file=stream or sys.stdout)


FORMATTERS = {"json": fmt_json, "table": fmt_table, "csv": fmt_csv}


def output(records: list, fmt: str, stream=None):
    FORMATTERS.get(fmt, fmt_json)(to_table_data(records), stream)


def fail(message: str):
    print(json.dumps({"error": message}))
    sys.exit(1)


def parse_date(value: str) -> datetime:
    for pattern in DATE_FORMATS:
        try:
            return datetime.strptime(value, pattern)
        except ValueError:
            continue
    raise argparse.ArgumentTypeError(f"Unrecognised date '{value}' (use YYYY-MM-DD[THH:MM[:SS]])")


def build_filter(args, version: int, now: datetime = None) -> str:
    """Combine --filter with the --hours / --from / --to date window."""
    since = args.date_from
    until = args.date_to
    if args.hours:
        since = (now or datetime.utcnow()) - timedelta(hours=args.hours)

    clauses = []
    if args.filter:
        clauses.append(f"({args.filter})" if since or until else args.filter)
    window = date_filter(args.date_field, since, until, version)
    if window:
        clauses.append(window)
    return " and ".join(clauses)


def make_client(args) -> MonitorClient:
    return MonitorClient(cloud=args.cloud, ddc=args.ddc, version=args.odata_version)


# -- Subcommand: collections --

def register_collections(sub):
    p = sub.add_parser("collections", help="List the entity sets exposed by the feed")
    p.add_argument("--format", choices=["json", "table"], default="table", help="Output format")


def run_collections(args):
    client = make_client(args)
    try:
        names = client.list_collections()
    except Exception as e:
        fail(str(e))
    output([{"collection": n} for n in names], args.format)


# -- Subcommand: query --

def register_query(sub):
    p = sub.add_parser("query", help="Query a collection")
    p.add_argument("collection", help="Entity set name (e.g. Sessions, Connections, Machines)")
    p.add_argument("--filter", default=None, help="OData $filter expression")
    p.add_argument("--select", default=None, help="Comma separated $select fields")
    p.add_argument("--orderby", default=None, help="OData $orderby expression")
    p.add_argument("--top", type=int, default=None, help="Max records (single page)")
    p.add_argument("--hours", type=int, default=None, help="Only records from the last N hours")
    p.add_argument("--from", dest="date_from", type=parse_date, default=None, help="Window start (UTC)")
    p.add_argument("--to", dest="date_to", type=parse_date, default=None, help="Window end (UTC)")
    p.add_argument("--date-field", default="CreatedDate", help="Field the date window applies to")
    p.add_argument("--resolve", action="store_true", help="Join identifier fields against their collections")
    p.add_argument("--format", choices=["json", "table", "csv"], default="json", help="Output format")
    p.add_argument("--output", default=None, help="Write CSV to this file instead of stdout")


def run_query(args):
    if args.hours and (args.date_from or args.date_to):
        fail("Use either --hours or --from/--to, not both")

    client = make_client(args)
    filter_expr = build_filter(args, client.version)

    try:
        records = client.query(
            args.collection,
            filter_expr=filter_expr or None,
            select=args.select,
            orderby=args.orderby,
            top=args.top,
        )
    except Exception as e:
        fail(str(e))

    print(f"  {args.collection}: {len(records)} records", file=sys.stderr)

    if args.resolve and records:
        context = ResolutionContext(client.fetch_collection, collection=singular(args.collection))
        records = expand_all(context, records)
        summary = context.summary()
        print(
            f"  Resolved against {len(summary['tables'])} collections "
            f"({summary['fetches']} fetches"
            + (f", unavailable: {', '.join(summary['failed'])}" if summary["failed"] else "")
            + ")",
            file=sys.stderr,
        )

    if args.output:
        with open(args.output, "w", newline="", encoding="utf-8") as f:
            fmt_csv(to_table_data(records), f)
        print(f"  Wrote {len(records)} rows to {args.output}", file=sys.stderr)
        return

    output(records, args.format)


# -- Main --

COMMANDS = {
    "collections": run_collections,
    "query": run_query,
}


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="monitor_query.py",
        description="Citrix Monitor Bridge -- read-only OData queries with reference resolution",
    )
    parser.add_argument("--cloud", action="store_true", help="Query Citrix Cloud")
    parser.add_argument("--ddc", default=None, help="Delivery Controller(s), comma separated")
    parser.add_argument("--odata-version", type=int, choices=[3, 4], default=None, help="Monitor OData version")
    sub = parser.add_subparsers(dest="command", required=True)

    register_collections(sub)
    register_query(sub)

    args = parser.parse_args(argv)
    COMMANDS[args.command](args)


if __name__ == "__main__":
    main()
