"""
Tests for the query CLI: filters, formatters and the --resolve path.
"""

import argparse
import io
import json
from datetime import datetime

import pytest

import monitor_query
from monitor_client import plural, singular
from monitor_query import build_filter, fmt_csv, parse_date, to_table_data


def filter_args(**overrides):
    values = {"filter": None, "hours": None, "date_from": None, "date_to": None, "date_field": "CreatedDate"}
    values.update(overrides)
    return argparse.Namespace(**values)


class FakeClient:
    """MonitorClient stand-in serving a Connections batch and its references."""

    instances = []

    def __init__(self, cloud=False, ddc=None, version=None):
        self.version = version or 4
        self.query_calls = []
        self.fetches = []
        FakeClient.instances.append(self)

    def query(self, collection, filter_expr=None, select=None, orderby=None, top=None):
        self.query_calls.append({"collection": collection, "filter_expr": filter_expr, "top": top})
        return [
            {"Id": "1", "SessionKey": "s1", "ClientName": "LAPTOP-1"},
            {"Id": "2", "SessionKey": "s9", "ClientName": "LAPTOP-2"},
        ]

    def fetch_collection(self, name):
        self.fetches.append(name)
        if name == "Session":
            return [{"SessionKey": "s1", "UserId": 7, "CurrentConnectionId": "1"}]
        if name == "User":
            return [{"Id": 7, "UserName": "bob"}]
        raise RuntimeError(f"{name} unavailable")

    def list_collections(self):
        return ["Connections", "Sessions"]


@pytest.fixture
def fake_client(monkeypatch):
    FakeClient.instances = []
    monkeypatch.setattr(monitor_query, "MonitorClient", FakeClient)
    return FakeClient


class TestFilters:
    def test_plain_filter(self):
        assert build_filter(filter_args(filter="LifecycleState eq 0"), 4) == "LifecycleState eq 0"

    def test_filter_with_window(self):
        args = filter_args(filter="UserId eq 1", date_from=datetime(2026, 10, 1))
        assert build_filter(args, 4) == "(UserId eq 1) and CreatedDate ge 2026-10-01T00:00:00Z"

    def test_hours_window(self):
        args = filter_args(hours=24, date_field="StartDate")
        result = build_filter(args, 3, now=datetime(2026, 10, 19, 12, 0))
        assert result == "StartDate ge datetime'2026-10-18T12:00:00'"

    def test_no_filter(self):
        assert build_filter(filter_args(), 4) == ""

    def test_parse_date(self):
        assert parse_date("2026-10-01") == datetime(2026, 10, 1)
        assert parse_date("2026-10-01T08:30") == datetime(2026, 10, 1, 8, 30)
        with pytest.raises(argparse.ArgumentTypeError):
            parse_date("yesterday")


class TestFormatting:
    def test_columns_are_ordered_union(self):
        data = to_table_data([{"a": 1, "b": 2}, {"b": 3, "c": 4}])
        assert data["columns"] == ["a", "b", "c"]
        assert data["row_count"] == 2

    def test_csv(self):
        stream = io.StringIO()
        fmt_csv(to_table_data([{"Id": 1, "Session.UserName": "bob"}, {"Id": 2}]), stream)
        lines = stream.getvalue().splitlines()
        assert lines == ["Id,Session.UserName", "1,bob", "2,"]

    @pytest.mark.parametrize("collection,entity", [
        ("Sessions", "Session"),
        ("Connections", "Connection"),
        ("ApplicationActivitySummaries", "ApplicationActivitySummary"),
        ("Processes", "Process"),
        ("Licenses", "License"),
        ("Machine", "Machine"),
    ])
    def test_entity_name(self, collection, entity):
        assert singular(collection) == entity

    @pytest.mark.parametrize("entity", ["Process", "Session", "ApplicationActivitySummary", "License"])
    def test_entity_name_matches_set_name(self, entity):
        assert singular(plural(entity)) == entity


class TestCommands:
    def test_query_with_resolve(self, fake_client, capsys):
        monitor_query.main(["query", "Connections", "--resolve", "--format", "json"])
        out, err = capsys.readouterr()
        rows = json.loads(out)

        assert rows[0] == {
            "Id": "1",
            "Session.SessionKey": "s1",
            "Session.User.Id": 7,
            "Session.User.UserName": "bob",
            "Session.CurrentConnectionId": "1",
            "ClientName": "LAPTOP-1",
        }
        assert rows[1] == {"Id": "2", "SessionKey": "s9", "ClientName": "LAPTOP-2"}

        client = fake_client.instances[0]
        assert "Connection" not in client.fetches
        assert client.fetches.count("Session") == 1
        assert "Resolved against 2 collections" in err

    def test_query_without_resolve_does_not_fetch(self, fake_client, capsys):
        monitor_query.main(["query", "Connections", "--top", "2", "--format", "csv"])
        out, _ = capsys.readouterr()
        assert out.splitlines()[0] == "Id,SessionKey,ClientName"
        client = fake_client.instances[0]
        assert client.fetches == []
        assert client.query_calls[0]["top"] == 2

    def test_query_output_file(self, fake_client, tmp_path, capsys):
        target = tmp_path / "connections.csv"
        monitor_query.main(["query", "Connections", "--resolve", "--output", str(target)])
        content = target.read_text(encoding="utf-8").splitlines()
        assert content[0].startswith("Id,Session.SessionKey,Session.User.Id")
        assert len(content) == 3

    def test_hours_and_range_conflict(self, fake_client, capsys):
        with pytest.raises(SystemExit):
            monitor_query.main(["query", "Sessions", "--hours", "4", "--from", "2026-10-01"])
        assert "error" in json.loads(capsys.readouterr().out)

    def test_collections(self, fake_client, capsys):
        monitor_query.main(["collections", "--format", "json"])
        rows = json.loads(capsys.readouterr().out)
        assert rows == [{"collection": "Connections"}, {"collection": "Sessions"}]
