"""Kephale CLI — poke the real-time API from a terminal.

Usage:
    kephale token USER_ID --email a@b.c           # Mint a dev token (uses KEPHALE_JWT_SECRET)
    kephale heartbeat                              # Mark yourself online
    kephale heartbeat --offline                    # Mark yourself offline
    kephale presence ID1 ID2 ...                   # Who is online
    kephale call-status [--claim]                  # Active / pending call
    kephale devices                                # Registered push devices
    kephale push-test                              # Send a test notification

Set KEPHALE_API_URL (default http://localhost:8000) and KEPHALE_TOKEN.
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

from kephale import __version__

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:8000"


def _api_url() -> str:
    return os.environ.get("KEPHALE_API_URL", DEFAULT_API_URL).rstrip("/")


def _token() -> str:
    token = os.environ.get("KEPHALE_TOKEN")
    if not token:
        click.secho(
            "Error: KEPHALE_TOKEN is not set (mint one with `kephale token USER_ID`)",
            fg="red",
            err=True,
        )
        sys.exit(1)
    return token


def _client() -> httpx.AsyncClient:
    """Build an async HTTP client pointed at the Kephale API."""
    return httpx.AsyncClient(
        base_url=_api_url(),
        headers={"Authorization": f"Bearer {_token()}"},
        timeout=30.0,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from a synchronous Click handler.

    Handles nested event loops (e.g. Click's CliRunner inside an async
    test) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _pretty_json(data: dict | list) -> str:
    return json.dumps(data, indent=2, default=str)


def _fail(r: httpx.Response) -> None:
    try:
        detail = r.json().get("detail", r.text)
    except ValueError:
        detail = r.text
    click.secho(f"Error {r.status_code}: {detail}", fg="red", err=True)
    sys.exit(1)


async def _request(method: str, path: str, **kwargs) -> dict:
    async with _client() as c:
        r = await c.request(method, f"/api/v1{path}", **kwargs)
    if r.status_code >= 400:
        _fail(r)
    return r.json()


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="kephale")
def main():
    """Kephale — presence, calls and push notifications from the terminal."""


@main.command()
@click.argument("user_id")
@click.option("--email", default="", help="Email claim")
@click.option("--role", default="USER", show_default=True, help="Role claim (USER, ADMIN, SUPER_ADMIN)")
@click.option("--minutes", type=int, default=None, help="Lifetime (defaults to KEPHALE_ACCESS_TOKEN_EXPIRE_MINUTES)")
def token(user_id: str, email: str, role: str, minutes: Optional[int]):
    """Mint an access token signed with the local KEPHALE_JWT_SECRET."""
    from kephale.auth.jwt import create_access_token

    click.echo(create_access_token(user_id, email=email, role=role, expires_minutes=minutes))


@main.command()
@click.option("--offline", is_flag=True, help="Mark offline instead of online")
def heartbeat(offline: bool):
    """Send a presence heartbeat."""
    body = {"offline": True} if offline else {}
    data = _run(_request("POST", "/presence", json=body))
    state = "online" if data["online"] else "offline"
    click.secho(state, fg="green" if data["online"] else "yellow")


@main.command()
@click.argument("user_ids", nargs=-1, required=True)
def presence(user_ids: tuple[str, ...]):
    """Show which of USER_IDS are online."""
    data = _run(_request("GET", "/presence", params={"userIds": ",".join(user_ids)}))
    for uid, online in data["presence"].items():
        dot = click.style("●", fg="green" if online else "white")
        click.echo(f"{dot} {uid}  {'online' if online else 'offline'}")


@main.command("call-status")
@click.option("--claim", is_flag=True, help="Consume the pending call")
def call_status(claim: bool):
    """Show the active and pending call."""
    params = {"claim": "1"} if claim else {}
    click.echo(_pretty_json(_run(_request("GET", "/call/status", params=params))))


@main.command()
def devices():
    """List push devices registered for you."""
    data = _run(_request("GET", "/push/subscriptions"))
    if not data["devices"]:
        click.echo("No devices registered.")
        return
    for d in data["devices"]:
        name = d.get("deviceName") or "—"
        click.echo(f"{d['id']}  {name:20s}  {d['endpoint'][:60]}")


@main.command("push-test")
def push_test():
    """Send a test notification to all your devices."""
    data = _run(_request("POST", "/push/test"))
    click.echo(data["message"])
    for r in data["results"]:
        color = "green" if r["status"] == "sent" else "red"
        click.secho(f"  {r['status']:6s} {r['endpoint']}", fg=color)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    main()
