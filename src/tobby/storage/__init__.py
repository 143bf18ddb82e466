"""Persistence for server and channel records."""

from tobby.storage.database import ChannelRecord, Database, Persistence, ServerRecord, bootstrap_server

__all__ = ["ChannelRecord", "Database", "Persistence", "ServerRecord", "bootstrap_server"]
