"""OrderPulse CLI: check on orders and uploads the way a client app does.

Usage:
    orderpulse health                          # Server, Postgres, Redis, live counters
    orderpulse status 42                       # Short poll an order once
    orderpulse watch 42                        # Long poll until the order is delivered
    orderpulse upload 7                        # Follow a menu image upload to the end
    orderpulse announce "Title" "Message"      # Publish an announcement (support)

Authentication: pass --token or set ORDERPULSE_TOKEN.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import sys
from typing import Optional

import click
import httpx

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:8000"


def _api_url() -> str:
    return os.environ.get("ORDERPULSE_API_URL", DEFAULT_API_URL).rstrip("/")


def _client(token: Optional[str] = None, timeout: float = 30.0) -> httpx.AsyncClient:
    """Build an async HTTP client pointed at the OrderPulse backend."""
    headers = {}
    token = token or os.environ.get("ORDERPULSE_TOKEN")
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return httpx.AsyncClient(base_url=_api_url(), timeout=timeout, headers=headers)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from synchronous Click handler.

    Handles nested event loops (e.g. when invoked via Click CliRunner
    inside an existing async context like tests) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        # No running loop: normal CLI invocation
        return asyncio.run(coro)
    else:
        # Already inside an event loop (e.g. test runner), run in a thread
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _pretty_json(data: dict | list) -> str:
    return json.dumps(data, indent=2, default=str)


def _fail(resp: httpx.Response):
    try:
        detail = resp.json().get("detail", resp.text)
    except ValueError:
        detail = resp.text
    click.secho(f"Error {resp.status_code}: {detail}", fg="red", err=True)
    sys.exit(1)


def _status_color(status: str) -> str:
    """Map status strings to click colors."""
    colors = {
        "confirmed": "white",
        "preparing": "yellow",
        "ready": "cyan",
        "picked_up": "blue",
        "delivered": "green",
        "cancelled": "red",
        "uploading": "white",
        "processing": "yellow",
        "completed": "green",
        "failed": "red",
    }
    return colors.get(status, "white")


def _status_line(body: dict) -> str:
    status = body.get("status", "?")
    line = click.style(status, fg=_status_color(status))
    if body.get("progress") is not None:
        line += f" {body['progress']}%"
    return line


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version="0.1.0", prog_name="orderpulse")
def main():
    """OrderPulse — follow orders, uploads and announcements in real time."""


# ---------------------------------------------------------------------------
# orderpulse health
# ---------------------------------------------------------------------------


@main.command()
def health():
    """Show server health and real-time counters."""
    _run(_health_impl())


async def _health_impl():
    async with _client() as c:
        r = await c.get("/api/v1/health")
        if r.status_code != 200:
            _fail(r)
        body = r.json()
        color = "green" if body.get("status") == "healthy" else "yellow"
        click.secho(f"Status: {body.get('status')}", fg=color, bold=True)
        for key in ("server", "postgres", "redis"):
            click.echo(f"  {key:10s} {body.get(key)}")
        click.echo()
        click.secho("Real-time:", bold=True)
        for key, value in (body.get("realtime") or {}).items():
            click.echo(f"  {key:18s} {value}")


# ---------------------------------------------------------------------------
# orderpulse status / watch
# ---------------------------------------------------------------------------


@main.command()
@click.argument("order_id", type=int)
@click.option("--token", help="JWT (or set ORDERPULSE_TOKEN)")
@click.option("--json", "as_json", is_flag=True, help="Print the raw response")
def status(order_id: int, token: Optional[str], as_json: bool):
    """Short poll an order's status once."""
    _run(_status_impl(order_id, token, as_json))


async def _status_impl(order_id: int, token: Optional[str], as_json: bool):
    async with _client(token) as c:
        r = await c.get(f"/api/v1/orders/{order_id}/status")
        if r.status_code != 200:
            _fail(r)
        body = r.json()
        if as_json:
            click.echo(_pretty_json(body))
            return
        click.echo(f"Order #{order_id}: {_status_line(body)}")
        if body.get("estimatedDelivery"):
            click.echo(f"  ETA: {body['estimatedDelivery']}")
        polling = body.get("polling", {})
        click.echo(f"  Poll again in {polling.get('nextPollIn', '?')}s")


@main.command()
@click.argument("order_id", type=int)
@click.option("--token", help="JWT (or set ORDERPULSE_TOKEN)")
@click.option("--timeout", default=30000, show_default=True, help="Per-request wait (ms)")
def watch(order_id: int, token: Optional[str], timeout: int):
    """Long poll an order until it's delivered or cancelled."""
    _run(_watch_impl(f"/api/v1/orders/{order_id}/status/wait", f"Order #{order_id}", token, timeout))


@main.command()
@click.argument("upload_id", type=int)
@click.option("--token", help="JWT (or set ORDERPULSE_TOKEN)")
@click.option("--timeout", default=30000, show_default=True, help="Per-request wait (ms)")
def upload(upload_id: int, token: Optional[str], timeout: int):
    """Follow a menu image upload until it completes or fails."""
    _run(_watch_impl(f"/api/v1/uploads/{upload_id}/status", f"Upload #{upload_id}", token, timeout))


async def _watch_impl(path: str, label: str, token: Optional[str], timeout: int):
    params: dict = {"timeout": timeout}
    # The server may hold each request for up to `timeout` ms.
    async with _client(token, timeout=timeout / 1000 + 10) as c:
        while True:
            r = await c.get(path, params=params)
            if r.status_code != 200:
                _fail(r)
            body = r.json()
            if not body.get("timeout"):
                click.echo(f"{label}: {_status_line(body)}")
            if body.get("completed"):
                click.secho(f"{label} finished: {body.get('status')}", bold=True)
                return

            params["state"] = body.get("status")
            if body.get("progress") is not None:
                params["progress"] = body["progress"]
            delay_ms = body.get("polling", {}).get("nextPollDelay", 2000)
            await asyncio.sleep(delay_ms / 1000)


# ---------------------------------------------------------------------------
# orderpulse announce
# ---------------------------------------------------------------------------


@main.command()
@click.argument("title")
@click.argument("message")
@click.option("--token", help="Support agent JWT (or set ORDERPULSE_TOKEN)")
@click.option(
    "--type",
    "announcement_type",
    type=click.Choice(["general", "maintenance", "promotion", "urgent"]),
    default="general",
    show_default=True,
)
@click.option(
    "--audience",
    type=click.Choice(["all", "customers", "restaurants", "drivers"]),
    default="all",
    show_default=True,
)
def announce(title: str, message: str, token: Optional[str], announcement_type: str, audience: str):
    """Publish an announcement to connected clients."""
    _run(_announce_impl(title, message, token, announcement_type, audience))


async def _announce_impl(
    title: str, message: str, token: Optional[str], announcement_type: str, audience: str
):
    async with _client(token) as c:
        r = await c.post(
            "/api/v1/announcements",
            json={
                "title": title,
                "message": message,
                "announcement_type": announcement_type,
                "target_audience": audience,
            },
        )
        if r.status_code != 201:
            _fail(r)
        body = r.json()
        click.secho(
            f"Announcement #{body['id']} published to {audience} ({body['broadcast']})",
            fg="green",
        )


if __name__ == "__main__":
    main()
