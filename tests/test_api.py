import importlib
from pathlib import Path
import sys

import requests


_ENV_KEYS = [
    "MTA_STATUS_URL",
    "STATUS_CACHE_PATH",
    "STATUS_CACHE_TTL_SEC",
    "API_RATE_LIMIT_PER_MIN",
    "CORS_ALLOWED_ORIGINS",
    "CORS_ALLOW_NULL_ORIGIN",
    "TRUST_PROXY_HEADERS",
]

PAGE = (Path(__file__).parent / "fixtures" / "status.html").read_text(encoding="utf-8")


def load_module(monkeypatch, tmp_path, **env):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("STATUS_CACHE_PATH", str(tmp_path / ".cache" / "status.json"))
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    sys.modules.pop("mta_status", None)
    import mta_status
    return importlib.reload(mta_status)


def serve_page(monkeypatch, mod, body=PAGE):
    calls = []

    def fetch(url=None):
        calls.append(url)
        return body

    monkeypatch.setattr(mod.status_service.fetcher, "fetch", fetch)
    return calls


def test_full_snapshot(monkeypatch, tmp_path):
    mod = load_module(monkeypatch, tmp_path)
    serve_page(monkeypatch, mod)

    resp = mod.app.test_client().get("/status")
    assert resp.status_code == 200
    assert resp.get_json() == {
        "subway": [
            {"name": "L", "status": "Good Service"},
            {"name": "N", "status": "Delays"},
        ]
    }
    assert resp.headers["Cache-Control"] == "max-age=300"


def test_service_then_cached(monkeypatch, tmp_path):
    mod = load_module(monkeypatch, tmp_path)
    calls = serve_page(monkeypatch, mod)
    client = mod.app.test_client()

    expected = [{"name": "L", "status": "Good Service"}, {"name": "N", "status": "Delays"}]
    assert client.get("/status/subway").get_json() == expected
    assert client.get("/status/subway").get_json() == expected
    assert len(calls) == 1
    assert (tmp_path / ".cache" / "status.json").exists()


def test_single_line(monkeypatch, tmp_path):
    mod = load_module(monkeypatch, tmp_path)
    serve_page(monkeypatch, mod)

    resp = mod.app.test_client().get("/status/subway/N")
    assert resp.status_code == 200
    assert resp.get_json() == {"name": "N", "status": "Delays"}


def test_no_data(monkeypatch, tmp_path):
    mod = load_module(monkeypatch, tmp_path)
    serve_page(monkeypatch, mod)
    client = mod.app.test_client()

    for path in ("/status/subway/Z", "/status/ferry"):
        resp = client.get(path)
        assert resp.status_code == 404
        assert resp.get_json()["error"]["code"] == "no_data"
        assert resp.headers["Cache-Control"] == "no-store"


def test_upstream_error(monkeypatch, tmp_path):
    mod = load_module(monkeypatch, tmp_path)

    def boom(url=None):
        raise mod.NetworkError("status page unreachable")

    monkeypatch.setattr(mod.status_service.fetcher, "fetch", boom)

    resp = mod.app.test_client().get("/status/subway")
    assert resp.status_code == 502
    assert resp.get_json()["error"]["code"] == "upstream_error"


def test_fetcher_wraps_transport_errors(monkeypatch, tmp_path):
    mod = load_module(monkeypatch, tmp_path)

    def refuse(*args, **kwargs):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr(mod.status_service.fetcher.session, "get", refuse)

    resp = mod.app.test_client().get("/status")
    assert resp.status_code == 502
    assert resp.get_json()["error"]["code"] == "upstream_error"


def test_fetcher_rejects_http_errors(monkeypatch, tmp_path):
    mod = load_module(monkeypatch, tmp_path, MTA_STATUS_URL="http://status.test/page.html")
    seen = {}

    class Resp:
        status_code = 503
        text = "unavailable"

    def get(url, **kwargs):
        seen["url"] = url
        seen["timeout"] = kwargs.get("timeout")
        return Resp()

    monkeypatch.setattr(mod.status_service.fetcher.session, "get", get)

    resp = mod.app.test_client().get("/status")
    assert resp.status_code == 502
    assert seen["url"] == "http://status.test/page.html"
    assert seen["timeout"] == (mod.MTA_CONNECT_TIMEOUT_SEC, mod.MTA_READ_TIMEOUT_SEC)


def test_extraction_error(monkeypatch, tmp_path):
    mod = load_module(monkeypatch, tmp_path)
    serve_page(monkeypatch, mod, body="<html><body>We'll be right back</body></html>")

    resp = mod.app.test_client().get("/status")
    assert resp.status_code == 502
    assert resp.get_json()["error"]["code"] == "extraction_error"


def test_cors_allow_deny(monkeypatch, tmp_path):
    mod = load_module(monkeypatch, tmp_path, CORS_ALLOWED_ORIGINS="http://allowed.test")
    serve_page(monkeypatch, mod)

    client = mod.app.test_client()
    resp = client.get("/status", headers={"Origin": "http://allowed.test"})
    assert resp.headers.get("Access-Control-Allow-Origin") == "http://allowed.test"

    resp = client.get("/status", headers={"Origin": "http://blocked.test"})
    assert "Access-Control-Allow-Origin" not in resp.headers
    assert resp.headers["X-Content-Type-Options"] == "nosniff"


def test_preflight(monkeypatch, tmp_path):
    mod = load_module(monkeypatch, tmp_path)
    calls = serve_page(monkeypatch, mod)

    resp = mod.app.test_client().options("/status/subway")
    assert resp.status_code == 204
    assert calls == []


def test_rate_limit(monkeypatch, tmp_path):
    mod = load_module(monkeypatch, tmp_path, API_RATE_LIMIT_PER_MIN="1")
    serve_page(monkeypatch, mod)

    client = mod.app.test_client()
    assert client.get("/status").status_code == 200

    resp = client.get("/status")
    assert resp.status_code == 429
    assert resp.get_json()["error"]["code"] == "rate_limited"
    assert int(resp.headers["Retry-After"]) >= 1


def test_rate_limit_per_forwarded_client(monkeypatch, tmp_path):
    mod = load_module(monkeypatch, tmp_path, API_RATE_LIMIT_PER_MIN="1", TRUST_PROXY_HEADERS="1")
    serve_page(monkeypatch, mod)

    client = mod.app.test_client()
    assert client.get("/status", headers={"X-Forwarded-For": "10.0.0.1"}).status_code == 200
    assert client.get("/status", headers={"X-Forwarded-For": "10.0.0.2, 10.0.0.9"}).status_code == 200
    assert client.get("/status", headers={"X-Forwarded-For": "10.0.0.1"}).status_code == 429
