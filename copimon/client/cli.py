"""
copimon.client.cli
~~~~~~~~~~~~~~~~~~

``copimon-client`` 命令行：加入一个房间，打印快照与实时条目，
并把标准输入的每一行作为新条目提交。
"""
from __future__ import annotations

import asyncio
import sys

import click

from copimon.client.sync_client import SyncClient
from copimon.core.config import get_client_settings
from copimon.core.logging import setup_logging
from copimon.schemas.items import Item


def _echo_item(item: Item) -> None:
    stamp = item.created_at.astimezone().strftime("%H:%M:%S")
    click.echo(f"[{stamp}] {item.text}")


async def _run(server_url: str, room_id: str, show_history: bool) -> None:
    loop = asyncio.get_running_loop()
    async with SyncClient(server_url, room_id) as client:
        client.add_listener(_echo_item)
        if show_history and await client.wait_for_snapshot(timeout=5.0):
            for item in reversed(client.get_cached_items()):
                _echo_item(item)
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            text = line.rstrip("\n")
            if text:
                await client.submit_text(text)
        pending = client.pending
        if pending:
            click.echo(f"{len(pending)} item(s) still queued, not delivered", err=True)


@click.command()
@click.option(
    "--server-url", "-s",
    default=lambda: get_client_settings().SERVER_URL,
    show_default="COPIMON_SERVER_URL or http://localhost:3001",
    help="Relay server base URL.",
)
@click.option(
    "--room", "-r", "room_id",
    default=lambda: get_client_settings().ROOM_ID,
    show_default="COPIMON_ROOM_ID or default",
    help="Room to join.",
)
@click.option("--history/--no-history", "show_history", default=True, help="Print cached history on connect.")
def main(server_url: str, room_id: str, show_history: bool) -> None:
    """Join a copimon room: print incoming items, submit stdin lines."""
    setup_logging()
    try:
        asyncio.run(_run(server_url, room_id, show_history))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
