"""Interface for ``python -m kv_store``."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from argparse import ArgumentParser, Namespace
from typing import TYPE_CHECKING, Any

from ._version import version
from .backends.redis import RedisBackend
from .store import Store


if TYPE_CHECKING:
    from collections.abc import Sequence


__all__ = ["main"]


def _parse_value(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return text


def _print_value(value: Any) -> None:
    print(json.dumps(value), flush=True)  # noqa: T201


async def _run(parsed: Namespace) -> None:
    backend = RedisBackend(parsed.url)
    async with Store(backend, parsed.namespace) as store:
        if parsed.command == "get":
            _print_value(await store.get(parsed.key))
        elif parsed.command == "set":
            await store.set(parsed.key, _parse_value(parsed.value))
        elif parsed.command == "delete":
            await store.delete(parsed.key)
        elif parsed.command == "watch":
            _ = store.subscribe(parsed.key, _print_value)
            _ = await asyncio.Event().wait()


def main(args: Sequence[str] | None = None) -> None:
    """Argument parser for the CLI."""
    parser = ArgumentParser(prog="kv_store")
    _ = parser.add_argument("-v", "--version", action="version", version=version)
    _ = parser.add_argument("--url", default="redis://localhost:6379/0", help="Redis connection URL")
    _ = parser.add_argument("--namespace", default="settings", help="namespace prefixing every key")
    _ = parser.add_argument("--log-level", default="WARNING", help="logging level")
    commands = parser.add_subparsers(dest="command")

    get_parser = commands.add_parser("get", help="print the JSON value of a key")
    _ = get_parser.add_argument("key")
    set_parser = commands.add_parser("set", help="store a value; parsed as JSON when possible")
    _ = set_parser.add_argument("key")
    _ = set_parser.add_argument("value")
    delete_parser = commands.add_parser("delete", help="remove a key")
    _ = delete_parser.add_argument("key")
    watch_parser = commands.add_parser("watch", help="print every change of a key as JSON lines")
    _ = watch_parser.add_argument("key")

    parsed = parser.parse_args(args)
    if parsed.command is None:
        parser.print_help()
        return

    logging.basicConfig(level=parsed.log_level.upper())
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(_run(parsed))


if __name__ == "__main__":
    main()
