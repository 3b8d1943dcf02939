"""
Reference resolution for Citrix Monitor OData records.

Monitor Service entities are flat: a Connection carries a SessionKey, a
Session carries a MachineId and a CurrentConnectionId, a Machine carries a
CatalogId and a DesktopGroupId, and so on. This module joins those
identifier fields against the referenced collections so a report row holds
readable values instead of GUIDs.

A resolution run works in two passes over one batch of records:

  1. resolve_references() looks at the identifier fields of the batch and
     fetches every referenced collection once, following the identifier
     fields of the fetched records as well (transitive pre-population).
  2. expand() replaces each resolvable identifier field of a record with
     the fields of the referenced record, namespaced as
     "<Collection>.<Field>", recursing into the referenced record's own
     identifier fields.

Field naming rules:
  <Entity>Id         -> collection <Entity>
  Current<Entity>Id  -> collection <Entity>
  SessionKey         -> collection Session
  sid                -> never a reference

A collection that fails to load is never retried within the run; fields
pointing into it are left as they were.
"""

import re
import sys

REFERENCE_FIELD = re.compile(r"^(.+)Id$")
GUID_LITERAL = re.compile(r"^(?:\(guid'([^']*)'\)|guid'([^']*)')$", re.IGNORECASE)

SESSION_KEY_FIELD = "SessionKey"
EXCLUDED_FIELDS = {"sid"}
CURRENT_PREFIX = "Current"


class ResolutionContext:
    """State for one resolution run: fetched tables and fetch bookkeeping.

    `fetch_collection` is any callable returning every record of a named
    collection (MonitorClient.fetch_collection in practice). `collection`
    is the collection the batch being resolved came from, if known; it is
    never fetched as a reference table and never expanded into.
    """

    def __init__(self, fetch_collection, collection: str = None):
        self.fetch_collection = fetch_collection
        self.collection = collection
        self.tables = {}
        self.fetched = set()
        self.fetch_count = 0

    @property
    def failed(self) -> list:
        """Collections whose fetch was attempted but produced no table."""
        return sorted(c for c in self.fetched if c not in self.tables)

    def summary(self) -> dict:
        return {
            "collection": self.collection,
            "tables": {name: len(table) for name, table in sorted(self.tables.items())},
            "failed": self.failed,
            "fetches": self.fetch_count,
        }


# ── Reference Discovery ────────────────────────────────────────────────

def classify_field(name: str):
    """Return the collection a field name refers to, or None."""
    # Dotted names are expansion output (Session.MachineId), never inputs.
    if not name or name in EXCLUDED_FIELDS or "." in name:
        return None
    if name == SESSION_KEY_FIELD:
        return "Session"

    match = REFERENCE_FIELD.match(name)
    if not match:
        return None
    prefix = match.group(1)
    # Plain prefix strip: CurrentlyUsedId maps to "lyUsed", not "CurrentlyUsed".
    if prefix.startswith(CURRENT_PREFIX):
        prefix = prefix[len(CURRENT_PREFIX):]
    return prefix or None


def reference_fields(record: dict) -> list:
    """(field, collection) pairs for the identifier fields of a record."""
    pairs = []
    for field in record:
        collection = classify_field(field)
        if collection:
            pairs.append((field, collection))
    return pairs


def normalize_key(value):
    """Stringify a key value, unwrapping OData guid'...' literals."""
    if value is None:
        return None
    key = str(value).strip()
    match = GUID_LITERAL.match(key)
    if match:
        key = match.group(1) if match.group(1) is not None else match.group(2)
    return key or None


def record_key(record: dict):
    """Primary key of a fetched record: its `Id` field, else SessionKey."""
    for field, value in record.items():
        if field.lower() == "id" and value is not None:
            return normalize_key(value)
    return normalize_key(record.get(SESSION_KEY_FIELD))


def _field_names(records) -> list:
    names = {}
    for record in records:
        for field in record:
            names.setdefault(field, None)
    return list(names)


# ── Reference Table Cache ──────────────────────────────────────────────

def build_table(records) -> dict:
    """Key a list of records by their primary key. Keyless records are skipped."""
    table = {}
    for record in records:
        key = record_key(record)
        if key is not None:
            table[key] = record
    return table


def load_table(context: ResolutionContext, collection: str):
    """
    Return the reference table for a collection, fetching it on first use.

    The collection is marked as attempted before the fetch, so a failing
    collection costs exactly one request per run. Fetch errors are reported
    on stderr and leave the collection without a table.
    """
    if collection in context.fetched:
        return context.tables.get(collection)
    if collection == context.collection:
        return None

    context.fetched.add(collection)
    context.fetch_count += 1
    try:
        records = list(context.fetch_collection(collection))
        table = build_table(records)
    except Exception as e:
        print(f"  Warning: {collection} not resolved ({e})", file=sys.stderr)
        return None

    context.tables[collection] = table

    for field in _field_names(records):
        referenced = classify_field(field)
        if referenced:
            load_table(context, referenced)

    return table


def resolve_references(context: ResolutionContext, records) -> ResolutionContext:
    """Pre-populate every reference table the batch transitively needs."""
    for field in _field_names(records):
        collection = classify_field(field)
        if collection:
            load_table(context, collection)
    return context


# ── Recursive Expansion ────────────────────────────────────────────────

def _replace_field(target: dict, key: str, new_items: list):
    """Swap `key` for `new_items` in place, keeping column order."""
    items = list(target.items())
    target.clear()
    for name, value in items:
        if name == key:
            target.update(new_items)
        else:
            target[name] = value


def _expand_fields(context, target, prefix, fields, seen_fields, visited):
    # Collections referenced at this level are closed to the levels below it.
    level = frozenset(c for c in (classify_field(f) for f, _ in fields) if c)

    for field, value in fields:
        collection = classify_field(field)
        if collection is None or field in seen_fields or collection in visited:
            continue

        table = context.tables.get(collection)
        if table is None:
            continue
        referenced = table.get(normalize_key(value))
        if referenced is None:
            continue

        namespace = f"{prefix}{collection}."
        _replace_field(
            target,
            prefix + field,
            [(namespace + name, ref_value) for name, ref_value in referenced.items()],
        )

        nested = [
            (name, ref_value)
            for name, ref_value in referenced.items()
            if name != field and name not in seen_fields
        ]
        _expand_fields(
            context,
            target,
            namespace,
            nested,
            seen_fields | {field},
            visited | level,
        )


def expand(context: ResolutionContext, record: dict, collection: str = None) -> dict:
    """
    Return a copy of `record` with its identifier fields expanded.

    Only tables already in the context are used; nothing is fetched here.
    Each expansion path tracks the field names it has expanded and the
    collections it has passed through, so A -> B -> A chains stop at B.
    A collection referenced directly by a record is not expanded again
    further down, which keeps Connection -> Session -> Connection from
    looping even when the record's own collection is unknown.
    Unresolvable fields keep their original value.
    """
    top = collection or context.collection
    visited = frozenset([top]) if top else frozenset()
    result = dict(record)
    _expand_fields(context, result, "", list(record.items()), frozenset(), visited)
    return result


def expand_all(context: ResolutionContext, records) -> list:
    """Run a full resolution pass over a batch and return the expanded records."""
    records = list(records)
    if not records:
        return []
    resolve_references(context, records)
    return [expand(context, record) for record in records]
