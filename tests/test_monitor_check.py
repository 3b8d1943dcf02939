import monitor_check


class StubClient:
    def __init__(self, cloud=False):
        self.cloud = cloud

    def test_connection(self):
        return {"ok": True, "base_url": "http://ddc01/Citrix/Monitor/OData/v4/Data"}

    def query(self, collection, top=None):
        return [{"Id": "m1"}]


def test_missing_environment(monkeypatch):
    monkeypatch.delenv("CITRIX_DDC", raising=False)
    report = monitor_check.check()
    assert report["environment"] == {"CITRIX_DDC": "MISSING"}
    assert report["api_connection"]["ok"] is False


def test_cloud_variables_checked(monkeypatch):
    for var in monitor_check.CLOUD_VARS:
        monkeypatch.delenv(var, raising=False)
    report = monitor_check.check(cloud=True)
    assert report["mode"] == "cloud"
    assert set(report["environment"]) == set(monitor_check.CLOUD_VARS)


def test_connection_and_permission(monkeypatch):
    monkeypatch.setenv("CITRIX_DDC", "ddc01")
    monkeypatch.setattr(monitor_check, "MonitorClient", StubClient)
    report = monitor_check.check()
    assert report["api_connection"]["ok"] is True
    assert report["permission_test"]["ok"] is True
