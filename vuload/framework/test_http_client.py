"""
Tests for the HTTP client wrapper, using httpx.MockTransport and a local
slow-body server for the total request timeout.
"""

import json
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import httpx
import pytest

from vuload.framework.http_client import HttpClient, Response


def test_successful_get_returns_status_and_body(ok_transport):
    with HttpClient(transport=ok_transport) as http:
        res = http.get("http://api.test/products/category-list")
    assert res.status == 200
    assert res.ok
    assert res.json() == ["a", "b"]
    assert res.duration_ms >= 0
    assert res.method == "GET"
    assert res.error is None


@pytest.mark.parametrize("status,failed", [
    (200, False), (204, False), (302, False), (399, False),
    (400, True), (404, True), (500, True), (0, True),
])
def test_failed_request_classification(status, failed):
    assert Response(status=status, duration_ms=1.0).failed is failed


def test_invalid_json_body_returns_none():
    assert Response(status=200, duration_ms=1.0, body="<html>").json() is None
    assert Response(status=200, duration_ms=1.0, body="").json() is None


def test_post_sends_json_body():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["body"] = json.loads(request.content)
        seen["content_type"] = request.headers["content-type"]
        return httpx.Response(201, json={"id": 1})

    with HttpClient(transport=httpx.MockTransport(handler)) as http:
        res = http.post("http://api.test/products/add", body={"title": "phone"})

    assert res.status == 201
    assert seen == {
        "method": "POST",
        "body": {"title": "phone"},
        "content_type": "application/json",
    }


def test_connection_error_becomes_status_zero():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with HttpClient(transport=httpx.MockTransport(handler)) as http:
        res = http.get("http://api.test/")
    assert res.status == 0
    assert res.failed
    assert "connection refused" in res.error


def test_timeout_becomes_status_zero():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("too slow", request=request)

    with HttpClient(timeout=0.5, transport=httpx.MockTransport(handler)) as http:
        res = http.get("http://api.test/")
    assert res.status == 0
    assert "timed out" in res.error


def test_recorder_sees_every_response():
    recorded = []
    transport = httpx.MockTransport(lambda request: httpx.Response(500))
    http = HttpClient(transport=transport, recorder=lambda res, name: recorded.append((res.status, name)))
    try:
        http.get("http://api.test/a", name="a")
        http.get("http://api.test/b")
    finally:
        http.close()
    assert recorded == [(500, "a"), (500, None)]


class SlowBodyHandler(BaseHTTPRequestHandler):
    """Sends an 8-byte body one byte every 250ms."""

    def do_GET(self):
        self.send_response(200)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", "8")
        self.end_headers()
        try:
            for _ in range(8):
                self.wfile.write(b"x")
                self.wfile.flush()
                time.sleep(0.25)
        except (BrokenPipeError, ConnectionResetError):
            pass

    def log_message(self, format, *args):
        pass


@pytest.fixture
def slow_body_url():
    server = ThreadingHTTPServer(("127.0.0.1", 0), SlowBodyHandler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{server.server_address[1]}/drip"
    finally:
        server.shutdown()
        server.server_close()


def test_slow_body_exceeding_total_timeout_is_a_failure(slow_body_url):
    # every byte arrives well within the per-read timeout
    with HttpClient(timeout=0.6, transport=httpx.HTTPTransport()) as http:
        started = time.monotonic()
        res = http.get(slow_body_url)
        elapsed = time.monotonic() - started

    assert res.status == 0
    assert res.failed
    assert "timed out" in res.error
    assert elapsed < 1.5


def test_slow_body_within_total_timeout_succeeds(slow_body_url):
    with HttpClient(timeout=5.0, transport=httpx.HTTPTransport()) as http:
        res = http.get(slow_body_url)
    assert res.status == 200
    assert res.body == "xxxxxxxx"
