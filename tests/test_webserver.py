"""
Brief: Tests for the admin HTTP API (dnsguard.servers.webserver).

Inputs:
  - None

Outputs:
  - None
"""

import pytest
from fastapi.testclient import TestClient

from conftest import query_bytes
from dnsguard.servers.webserver import RingBuffer, create_app, start_webserver


@pytest.fixture
def client(make_pipeline):
    pipeline = make_pipeline()
    app = create_app(pipeline, {"webserver": {"enabled": True}})
    return TestClient(app), pipeline


def test_ring_buffer_keeps_newest():
    buf = RingBuffer(capacity=2)
    for i in range(3):
        buf.push(i)
    assert buf.snapshot() == [1, 2]
    assert buf.snapshot(limit=1) == [2]
    assert buf.snapshot(limit=0) == []


def test_health(client):
    c, _ = client
    resp = c.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_rule_mutations_over_http(client):
    c, pipeline = client
    resp = c.post("/api/v1/rules/blocked", json={"domain": "Ads.COM"})
    assert resp.status_code == 200
    assert resp.json()["blocked"] == ["ads.com"]
    assert pipeline.is_blocked("sub.ads.com")

    resp = c.request("DELETE", "/api/v1/rules/blocked", json={"domain": "ads.com"})
    assert resp.json()["blocked"] == []
    assert not pipeline.is_blocked("sub.ads.com")

    c.post("/api/v1/rules/allowed", json={"domain": "school.edu"})
    resp = c.put("/api/v1/rules/mode", json={"mode": "whitelist"})
    body = resp.json()
    assert body["mode"] == "whitelist" and body["allowed"] == ["school.edu"]
    assert pipeline.is_blocked("other.com")

    resp = c.request("DELETE", "/api/v1/rules/allowed", json={"domain": "school.edu"})
    assert resp.json()["allowed"] == []


def test_category_toggle_and_unknown_category(client):
    c, _ = client
    resp = c.post("/api/v1/rules/categories/gaming/toggle")
    assert resp.json()["active_categories"] == ["gaming"]
    resp = c.post("/api/v1/rules/categories/knitting/toggle")
    assert resp.status_code == 400
    assert "knitting" in resp.json()["detail"]


def test_invalid_inputs_return_400(client):
    c, pipeline = client
    assert c.put("/api/v1/rules/mode", json={"mode": "sometimes"}).status_code == 400
    assert c.post("/api/v1/rules/blocked", json={"domain": "  "}).status_code == 400
    assert c.put("/api/v1/devices/10.0.0.1/name", json={"name": " "}).status_code == 400
    assert pipeline.store.version == 0


def test_test_domain_endpoint(client):
    c, pipeline = client
    pipeline.add_blocked_domain("tracker.io")
    data = c.get("/api/v1/test/CDN.Tracker.IO").json()
    assert data["domain"] == "cdn.tracker.io"
    assert data["blocked"] is True
    assert data["action"] == "blocked"
    assert data["matched_rule"] == "tracker.io"


def test_stats_devices_and_reset(client):
    c, pipeline = client
    pipeline.handle_query(query_bytes("example.com"), "192.168.1.20")

    stats = c.get("/api/v1/stats").json()
    assert stats["totals"]["total_queries"] == 1
    assert len(stats["history"]) == 1
    assert stats["privacy"]["mode"] == "enhanced"
    assert "hits" in stats["cache"]
    assert "history" not in c.get("/api/v1/stats", params={"history": "false"}).json()

    devices = c.get("/api/v1/devices").json()["devices"]
    assert devices[0]["ip"] == "192.168.1.20"
    renamed = c.put("/api/v1/devices/192.168.1.20/name", json={"name": "Tablet"}).json()
    assert renamed["name"] == "Tablet"
    assert c.get("/api/v1/devices/192.168.1.20").json()["name"] == "Tablet"
    assert c.get("/api/v1/devices/10.9.9.9").status_code == 404

    reset = c.post("/api/v1/stats/reset").json()
    assert reset["totals"]["total_queries"] == 0
    assert c.get("/api/v1/devices").json()["devices"] == []


def test_events_endpoint_filters_by_topic(make_pipeline):
    buffer = RingBuffer(10)
    c = TestClient(create_app(make_pipeline(), {}, event_buffer=buffer))

    buffer.record_event("dns-query", {"domain": "example.com"})
    buffer.record_event("stats-update", {"totals": {}})
    events = c.get("/api/v1/events", params={"topic": "dns-query"}).json()["events"]
    assert [e["payload"]["domain"] for e in events] == ["example.com"]
    assert len(c.get("/api/v1/events", params={"limit": 1}).json()["events"]) == 1


def test_enforcement_endpoints(client):
    c, _ = client
    assert c.get("/api/v1/enforcement").json()["enabled"] is False
    assert c.put("/api/v1/enforcement", json={"enabled": True}).json()["enabled"] is True
    assert c.put("/api/v1/enforcement", json={"enabled": False}).json()["enabled"] is False


def test_token_auth(make_pipeline):
    pipeline = make_pipeline()
    cfg = {"webserver": {"enabled": True, "auth": {"mode": "token", "token": "s3cret"}}}
    c = TestClient(create_app(pipeline, cfg))
    assert c.get("/health").status_code == 200
    assert c.get("/api/v1/rules").status_code == 401
    assert c.get("/api/v1/rules", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert c.get("/api/v1/rules", headers={"Authorization": "Bearer s3cret"}).status_code == 200
    assert c.get("/api/v1/rules", headers={"X-API-Key": "s3cret"}).status_code == 200


def test_token_auth_without_token_is_server_error(make_pipeline):
    cfg = {"webserver": {"auth": {"mode": "token"}}}
    c = TestClient(create_app(make_pipeline(), cfg))
    assert c.get("/api/v1/rules").status_code == 500


def test_start_webserver_disabled_returns_none(make_pipeline):
    assert start_webserver(make_pipeline(), {"webserver": {"enabled": False}}) is None
    assert start_webserver(make_pipeline(), {}) is None


def test_privacy_settings_and_clear(client):
    c, pipeline = client
    assert c.get("/api/v1/privacy/settings").json()["mode"] == "enhanced"

    resp = c.put("/api/v1/privacy/settings", json={"mode": "strict"})
    assert resp.status_code == 200
    assert resp.json()["domain_hashing"] is True
    assert pipeline.sanitizer.mode == "strict"

    resp = c.put("/api/v1/privacy/settings", json={"mode": "paranoid"})
    assert resp.status_code == 400
    assert pipeline.sanitizer.mode == "strict"

    pipeline.handle_query(query_bytes("example.com"), "192.168.1.4")
    resp = c.post("/api/v1/privacy/clear")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert pipeline.get_history()["total"] == 0
    assert pipeline.get_devices() == []


def test_history_pagination(client):
    c, pipeline = client
    for name in ("example.com", "news.site", "example.com"):
        pipeline.handle_query(query_bytes(name), "192.168.1.4")
    body = c.get("/api/v1/history", params={"limit": 2, "offset": 1}).json()
    assert body["total"] == 3
    assert len(body["items"]) == 2
    assert c.get("/api/v1/history", params={"limit": -1}).status_code == 422


def test_active_devices_route_is_not_a_device_lookup(client):
    c, pipeline = client
    pipeline.handle_query(query_bytes("example.com"), "192.168.1.4")
    resp = c.get("/api/v1/devices/active")
    assert resp.status_code == 200
    assert [d["ip"] for d in resp.json()["devices"]] == ["192.168.1.4"]
    assert c.get("/api/v1/devices/192.168.1.4").json()["ip"] == "192.168.1.4"
