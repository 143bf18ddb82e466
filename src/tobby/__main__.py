"""Headless entrypoint. Loads config, connects auto-connect servers, logs the event stream."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import os
import signal
import sys
from pathlib import Path
from typing import Any

from loguru import logger

from tobby import __version__
from tobby.config import Config, cfg, load_config_with_env
from tobby.events import ConnectionStateChanged, ErrorRaised, MessageAdded
from tobby.gateway import Bus
from tobby.irc import IRCClient
from tobby.storage import Database, bootstrap_server
from tobby.store import BufferStore


def _safe_message_filter(record: Any) -> bool:
    """Escape braces/angles in log messages to prevent format/tag errors."""
    if isinstance(record.get("message"), str):
        msg = record["message"]
        msg = msg.replace("{", "{{").replace("}", "}}").replace("<", "\\<")
        record["message"] = msg
    return True


def setup_logging(verbose: bool = False) -> None:
    """Configure loguru.
    Level: verbose=True or LOG_LEVEL=DEBUG enables DEBUG; otherwise INFO."""
    level = "INFO"
    if verbose:
        level = "DEBUG"
    else:
        env_level = (os.environ.get("LOG_LEVEL") or "").upper()
        if env_level in ("DEBUG", "INFO", "WARNING", "ERROR"):
            level = env_level

    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format=("<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan> | {message}"),
        filter=_safe_message_filter,
    )


def reload_config(config_path: Path) -> Config:
    """Load config from path and update global cfg."""
    data = load_config_with_env(config_path)
    cfg.reload(data)
    return cfg


class EventLog:
    """Bus subscriber that writes conversation events to the log."""

    def accept_event(self, source: str, evt: object) -> bool:
        return isinstance(evt, (ConnectionStateChanged, MessageAdded, ErrorRaised))

    def push_event(self, source: str, evt: object) -> None:
        if isinstance(evt, ConnectionStateChanged):
            logger.info("[{}] {} -> {}", evt.server_id[:8], evt.previous, evt.state)
        elif isinstance(evt, MessageAdded):
            m = evt.message
            if not evt.replayed:
                logger.info("[{}] <{}> {}", evt.buffer_id[:8], m.sender, m.content)
        elif isinstance(evt, ErrorRaised):
            logger.warning("[{}] {} {}", evt.server_id[:8], evt.code, evt.message)


def main() -> None:
    """Main entrypoint."""
    parser = argparse.ArgumentParser(description="tobby: terminal IRC client")
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    args = parser.parse_args()

    setup_logging(args.verbose)

    if not args.config.exists():
        logger.error("Config file not found: {}", args.config)
        sys.exit(1)

    config = reload_config(args.config)
    logger.info("Config loaded from {}", args.config)

    asyncio.run(_run(config))


async def _run(config: Config) -> None:
    """Connect every auto-connect server and run until signalled."""
    bus = Bus()
    bus.register(EventLog())
    store = BufferStore(bus)
    db = Database(config.database_path)
    for settings in config.servers:
        bootstrap_server(db, settings)

    client = IRCClient.from_config(config, bus, store, persistence=db)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    records = db.list_auto_connect_servers()
    if not records:
        logger.warning("No auto-connect servers configured")
    for record in records:
        channels = [c.name for c in db.list_auto_join_channels(record.id)]
        settings = record.to_settings(auto_join=channels)
        settings.tls_verify = config.tls_verify
        await client.connect(settings)

    try:
        await stop.wait()
    finally:
        logger.info("Shutting down")
        client.close_all("Leaving")
        # Let QUIT lines flush before the loop closes
        await asyncio.sleep(0.1)
        db.close()


if __name__ == "__main__":
    main()
