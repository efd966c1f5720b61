import json

from headmaster_workers.health import render_response
from headmaster_workers.metrics import increment


def _split(response):
    head, body = response.split("\r\n\r\n", 1)
    return head.splitlines()[0], json.loads(body)


def test_health_ok_includes_metrics():
    increment("hours_evaluated", 4)

    status_line, body = _split(render_response("/health", "ok"))

    assert status_line == "HTTP/1.1 200 OK"
    assert body["status"] == "ok"
    assert body["metrics"]["hours_evaluated"] == 4


def test_health_degraded_when_db_unreachable():
    status_line, body = _split(render_response("/health", "error"))
    assert status_line.startswith("HTTP/1.1 503")
    assert body["status"] == "degraded"
    assert body["db"] == "error"


def test_unknown_path():
    status_line, body = _split(render_response("/metrics", "skipped"))
    assert status_line.startswith("HTTP/1.1 404")
    assert body == {"error": "not_found"}


def test_content_length_matches_body():
    response = render_response("/health", "ok")
    head, body = response.split("\r\n\r\n", 1)
    assert f"Content-Length: {len(body)}" in head
