"""threadqueue CLI — fire dispatch triggers and inspect thread chats by hand.

Usage:
    threadqueue drain <user-id>                              # Advance a user's queue
    threadqueue run-scheduled <user-id> <thread-id> <chat>   # Fire a scheduled chat now
    threadqueue status <user-id> <chat-id>                   # Show a chat's status
    threadqueue queue <user-id>                              # List a user's chats
    threadqueue sweep                                        # Run one sweeper pass

Talks to a running service over HTTP, presenting THREADQUEUE_INTERNAL_SECRET.
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

from threadqueue import __version__

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:8000"


def _api_url() -> str:
    return os.environ.get("THREADQUEUE_API_URL", DEFAULT_API_URL).rstrip("/")


def _client() -> httpx.AsyncClient:
    """Build an async HTTP client pointed at the threadqueue service."""
    secret = os.environ.get("THREADQUEUE_INTERNAL_SECRET", "")
    return httpx.AsyncClient(
        base_url=_api_url(),
        timeout=30.0,
        headers={"Authorization": f"Bearer {secret}"} if secret else {},
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from a synchronous click handler.

    Offloads to a thread when an event loop is already running (e.g. when
    invoked through CliRunner inside an async test).
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


def _status_color(status: str) -> str:
    colors = {
        "started": "green",
        "deferred": "yellow",
        "already_running": "yellow",
        "queue_empty": "white",
        "not_due": "white",
        "scheduled": "cyan",
        "queued": "white",
        "running": "yellow",
        "completed": "green",
        "failed": "red",
    }
    return colors.get(status, "white")


async def _request(method: str, path: str, **kwargs) -> dict | list:
    async with _client() as c:
        try:
            r = await c.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            click.secho(f"Error: cannot reach {_api_url()}: {e}", fg="red", err=True)
            sys.exit(1)
    if r.status_code >= 400:
        try:
            detail = r.json().get("detail", r.text)
        except ValueError:
            detail = r.text
        click.secho(f"Error {r.status_code}: {detail}", fg="red", err=True)
        sys.exit(1)
    return r.json()


def _echo_ack(ack: dict, as_json: bool) -> None:
    if as_json:
        click.echo(_pretty_json(ack))
        return
    outcome = ack["outcome"]
    click.secho(outcome, fg=_status_color(outcome), bold=True, nl=False)
    chat_id = ack.get("thread_chat_id")
    click.echo(f"  user={ack['user_id']}" + (f" chat={chat_id}" if chat_id else ""))


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="threadqueue")
def main():
    """threadqueue — scheduled and queued thread chat dispatch."""


@main.command()
@click.argument("user_id")
@click.option("--json", "as_json", is_flag=True, help="Print the raw ack")
def drain(user_id: str, as_json: bool):
    """Start the user's oldest queued chat if nothing of theirs is running."""
    ack = _run(_request("POST", f"/api/v1/internal/dispatch/queue/{user_id}"))
    _echo_ack(ack, as_json)


@main.command("run-scheduled")
@click.argument("user_id")
@click.argument("thread_id")
@click.argument("thread_chat_id")
@click.option("--json", "as_json", is_flag=True, help="Print the raw ack")
def run_scheduled(user_id: str, thread_id: str, thread_chat_id: str, as_json: bool):
    """Fire the scheduled trigger for one chat now."""
    ack = _run(_request(
        "POST",
        "/api/v1/internal/dispatch/scheduled",
        json={"user_id": user_id, "thread_id": thread_id, "thread_chat_id": thread_chat_id},
    ))
    _echo_ack(ack, as_json)


@main.command()
@click.argument("user_id")
@click.argument("thread_chat_id")
def status(user_id: str, thread_chat_id: str):
    """Show one chat's status."""
    chat = _run(_request(
        "GET", f"/api/v1/internal/users/{user_id}/thread-chats/{thread_chat_id}"
    ))
    click.secho(chat["status"], fg=_status_color(chat["status"]), bold=True)
    if chat.get("error"):
        click.echo(f"error: {chat['error']}")


@main.command()
@click.argument("user_id")
@click.option("--status", "status_filter", help="Only chats in this status")
def queue(user_id: str, status_filter: Optional[str]):
    """List a user's chats, oldest first."""
    params = {"status": status_filter} if status_filter else {}
    chats = _run(_request(
        "GET", f"/api/v1/internal/users/{user_id}/thread-chats", params=params
    ))
    if not chats:
        click.echo("No thread chats.")
        return
    for chat in chats:
        click.secho(f"{chat['status']:<10}", fg=_status_color(chat["status"]), nl=False)
        click.echo(f"  {chat['id']}  thread={chat['thread_id']}  created={chat['created_at']}")


@main.command()
def sweep():
    """Run one sweeper pass (reap stalled runs, drain waiting users)."""
    result = _run(_request("POST", "/api/v1/internal/sweep"))
    click.echo(_pretty_json(result))


if __name__ == "__main__":
    main()
