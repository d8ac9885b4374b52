#!/usr/bin/env python3
"""
main.py – Minecraft Plugin Gateway
==================================
Entry point: serve the web API, or query the marketplaces from a terminal.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable

import aiohttp
from rich.console import Console
from rich.table import Table

from plugin_apis import PluginAPIError, PluginProvider

logger = logging.getLogger("plugin_gateway")
console = Console()


# ──────────────────────────────────────────────
#  Logging
# ──────────────────────────────────────────────

def setup_logging(level: str = "INFO", log_dir: str | Path = "logs") -> None:
    log_dir = Path(log_dir)
    log_dir.mkdir(exist_ok=True)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(log_dir / "gateway.log", encoding="utf-8"),
            logging.StreamHandler(sys.stdout),
        ],
    )


# ──────────────────────────────────────────────
#  CLI
# ──────────────────────────────────────────────

def parse_args(argv=None) -> argparse.Namespace:
    providers = [p.value for p in PluginProvider]

    p = argparse.ArgumentParser(
        description="Minecraft plugin gateway – search and install marketplace plugins",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument("--config", default="config.json", help="Path to config.json")
    p.add_argument("--log-level", default="INFO", help="Logging level")
    sub = p.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the web API")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)

    search = sub.add_parser("search", help="Search a marketplace")
    search.add_argument("provider", choices=providers)
    search.add_argument("query", nargs="?", default="")
    search.add_argument("--page", type=int, default=1)
    search.add_argument("--page-size", type=int, default=20)
    search.add_argument("--mc-version", default="")
    search.add_argument("--user", default=None, help="Panel user id (Polymart premium)")

    versions = sub.add_parser("versions", help="List versions of a plugin")
    versions.add_argument("provider", choices=providers)
    versions.add_argument("plugin_id")

    install = sub.add_parser("install", help="Install a plugin version on a server")
    install.add_argument("provider", choices=providers)
    install.add_argument("plugin_id")
    install.add_argument("version_id")
    install.add_argument("--server", required=True, help="Server reference")
    install.add_argument("--user", default=None)

    status = sub.add_parser("link-status", help="Show whether a user linked Polymart")
    status.add_argument("--user", required=True)

    return p.parse_args(argv)


def _run(fn: Callable[[aiohttp.ClientSession], Awaitable[Any]]) -> Any:
    async def _with_session():
        async with aiohttp.ClientSession() as session:
            return await fn(session)
    return asyncio.run(_with_session())


# ──────────────────────────────────────────────
#  Commands
# ──────────────────────────────────────────────

def cmd_search(mgr, args: argparse.Namespace) -> int:
    result = _run(lambda session: mgr.gateway.search(
        args.provider, session, query=args.query, page=args.page,
        page_size=args.page_size, mc_version=args.mc_version, user_id=args.user,
    ))

    t = Table(title=f"{args.provider} – page {result.current_page}/{result.total_pages}")
    t.add_column("ID", style="cyan")
    t.add_column("Name", style="bold")
    t.add_column("Description")
    t.add_column("External", style="yellow")
    for item in result.items:
        t.add_row(item.id, item.name, item.short_description, item.external_url or "")
    console.print(t)
    console.print(f"[dim]{result.total} results, {result.page_size} per page[/]")
    return 0


def cmd_versions(mgr, args: argparse.Namespace) -> int:
    versions = _run(lambda session: mgr.gateway.list_versions(
        args.provider, args.plugin_id, session,
    ))

    t = Table(title=f"{args.provider} plugin {args.plugin_id}")
    t.add_column("ID", style="cyan")
    t.add_column("Name", style="bold")
    t.add_column("Game versions")
    for v in versions:
        t.add_row(v.id, v.name, ", ".join(v.game_versions or []))
    console.print(t)
    return 0


def cmd_install(mgr, args: argparse.Namespace) -> int:
    path = _run(lambda session: mgr.gateway.install_plugin(
        args.server, args.provider, args.plugin_id, args.version_id, session,
        user_id=args.user,
    ))
    console.print(f"[bold green]Installed[/] {path}")
    return 0


def cmd_link_status(mgr, args: argparse.Namespace) -> int:
    linked = mgr.gateway.is_polymart_linked(args.user)
    console.print(f"Polymart: {'[green]linked[/]' if linked else '[red]not linked[/]'}")
    return 0


COMMANDS = {
    "search": cmd_search,
    "versions": cmd_versions,
    "install": cmd_install,
    "link-status": cmd_link_status,
}


# ──────────────────────────────────────────────
#  Entry Point
# ──────────────────────────────────────────────

def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    if args.command == "serve":
        from web_ui import run_server
        run_server(args.config, host=args.host, port=args.port)
        return 0

    from server_manager import ServerManager
    mgr = ServerManager(args.config)
    try:
        return COMMANDS[args.command](mgr, args)
    except PluginAPIError as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        console.print(f"[bold red]Error:[/] {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
