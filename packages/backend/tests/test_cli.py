"""CLI commands against a mocked HTTP transport."""

import httpx
import pytest
from click.testing import CliRunner

from orderpulse.cli import main as cli


@pytest.fixture()
def serve(monkeypatch):
    """Route the CLI's HTTP client to a handler; returns the list of seen requests."""
    seen: list[httpx.Request] = []

    def install(handler):
        def wrapped(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return handler(request)

        def fake_client(token=None, timeout=30.0):
            return httpx.AsyncClient(
                base_url="http://test", transport=httpx.MockTransport(wrapped)
            )

        monkeypatch.setattr(cli, "_client", fake_client)
        return seen

    return install


def test_health(serve):
    serve(lambda r: httpx.Response(200, json={
        "status": "healthy", "server": "ok", "postgres": "ok", "redis": "ok",
        "realtime": {"streams": 3},
    }))
    result = CliRunner().invoke(cli.main, ["health"])
    assert result.exit_code == 0
    assert "healthy" in result.output
    assert "streams" in result.output


def test_status(serve):
    serve(lambda r: httpx.Response(200, json={
        "status": "preparing", "estimatedDelivery": "2024-01-01T12:40:00+00:00",
        "polling": {"nextPollIn": 60},
    }))
    result = CliRunner().invoke(cli.main, ["status", "42"])
    assert result.exit_code == 0
    assert "Order #42: preparing" in result.output
    assert "Poll again in 60s" in result.output


def test_status_error_exits_nonzero(serve):
    serve(lambda r: httpx.Response(404, json={"detail": "Order not found"}))
    result = CliRunner().invoke(cli.main, ["status", "42"])
    assert result.exit_code == 1
    assert "Order not found" in result.output


def test_watch_follows_until_completed(serve):
    replies = iter([
        {"status": "preparing", "completed": False, "timeout": False,
         "polling": {"continue": True, "nextPollDelay": 0}},
        {"status": "preparing", "completed": False, "timeout": True,
         "polling": {"continue": True, "nextPollDelay": 0}},
        {"status": "delivered", "completed": True, "timeout": False,
         "polling": {"continue": False, "nextPollDelay": 0}},
    ])
    seen = serve(lambda r: httpx.Response(200, json=next(replies)))

    result = CliRunner().invoke(cli.main, ["watch", "42", "--timeout", "1000"])

    assert result.exit_code == 0
    assert "finished: delivered" in result.output
    assert len(seen) == 3
    assert "state" not in seen[0].url.params
    assert seen[1].url.params["state"] == "preparing"
    assert seen[0].url.path == "/api/v1/orders/42/status/wait"


def test_upload_passes_progress(serve):
    replies = iter([
        {"status": "processing", "progress": 40, "completed": False, "timeout": False,
         "polling": {"nextPollDelay": 0}},
        {"status": "completed", "progress": 100, "completed": True, "timeout": False,
         "polling": {"nextPollDelay": 0}},
    ])
    seen = serve(lambda r: httpx.Response(200, json=next(replies)))

    result = CliRunner().invoke(cli.main, ["upload", "7"])

    assert result.exit_code == 0
    assert "40%" in result.output
    assert seen[1].url.params["progress"] == "40"


def test_announce(serve):
    seen = serve(lambda r: httpx.Response(201, json={"id": 5, "broadcast": "immediate"}))
    result = CliRunner().invoke(
        cli.main, ["announce", "Title", "Body", "--type", "urgent", "--audience", "drivers"]
    )
    assert result.exit_code == 0
    assert "Announcement #5 published to drivers" in result.output
    assert b'"target_audience":"drivers"' in seen[0].content.replace(b" ", b"")
