"""SQLite persistence for server and channel records.

Only the read/write contract is consumed by the engine: the handshake reads the
auto-join list once registration completes, and explicit user actions write.
The dispatcher never writes here.
"""

from __future__ import annotations

import sqlite3
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from loguru import logger

from tobby.config.schema import ServerSettings
from tobby.core.constants import CHANNEL_NAMESPACE

SCHEMA_SQL = """
PRAGMA foreign_keys=ON;

CREATE TABLE IF NOT EXISTS servers (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  host TEXT NOT NULL,
  port INTEGER NOT NULL,
  ssl INTEGER NOT NULL DEFAULT 1,
  nickname TEXT NOT NULL,
  username TEXT,
  realname TEXT,
  password TEXT,
  sasl_account TEXT,
  sasl_password TEXT,
  auto_connect INTEGER NOT NULL DEFAULT 0,
  sort_order INTEGER NOT NULL DEFAULT 0,
  created_at REAL NOT NULL,
  updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS channels (
  id TEXT PRIMARY KEY,
  server_id TEXT NOT NULL,
  name TEXT NOT NULL,
  auto_join INTEGER NOT NULL DEFAULT 1,
  sort_order INTEGER NOT NULL DEFAULT 0,
  created_at REAL NOT NULL,
  UNIQUE(server_id, name),
  FOREIGN KEY(server_id) REFERENCES servers(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_channels_server ON channels(server_id, sort_order);
"""

_SERVER_COLUMNS = {
    "name",
    "host",
    "port",
    "ssl",
    "nickname",
    "username",
    "realname",
    "password",
    "sasl_account",
    "sasl_password",
    "auto_connect",
    "sort_order",
}


def normalize_channel_name(name: str) -> str:
    name = name.strip()
    return name if name.startswith(("#", "&")) else f"#{name}"


def channel_record_id(server_id: str, name: str) -> str:
    return str(uuid.uuid5(CHANNEL_NAMESPACE, f"{server_id}:{name}"))


@dataclass(frozen=True)
class ServerRecord:
    id: str
    name: str
    host: str
    port: int
    ssl: bool
    nickname: str
    username: str | None
    realname: str | None
    password: str | None
    sasl_account: str | None
    sasl_password: str | None
    auto_connect: bool
    sort_order: int

    def to_settings(self, auto_join: list[str] | None = None) -> ServerSettings:
        return ServerSettings(
            id=self.id,
            name=self.name,
            host=self.host,
            port=self.port,
            tls=self.ssl,
            nickname=self.nickname,
            username=self.username or "",
            realname=self.realname or "",
            password=self.password,
            sasl_username=self.sasl_account,
            sasl_password=self.sasl_password,
            auto_connect=self.auto_connect,
            auto_join=list(auto_join or []),
        )


@dataclass(frozen=True)
class ChannelRecord:
    id: str
    server_id: str
    name: str
    auto_join: bool
    sort_order: int


class Persistence(Protocol):
    """Read/write contract the engine consumes."""

    def list_auto_join_channels(self, server_id: str) -> list[ChannelRecord]: ...
    def save_channel(self, server_id: str, name: str, *, auto_join: bool = True) -> ChannelRecord: ...
    def delete_channel(self, server_id: str, name: str) -> None: ...


def _server_row(row: sqlite3.Row) -> ServerRecord:
    return ServerRecord(
        id=row["id"],
        name=row["name"],
        host=row["host"],
        port=int(row["port"]),
        ssl=bool(row["ssl"]),
        nickname=row["nickname"],
        username=row["username"],
        realname=row["realname"],
        password=row["password"],
        sasl_account=row["sasl_account"],
        sasl_password=row["sasl_password"],
        auto_connect=bool(row["auto_connect"]),
        sort_order=int(row["sort_order"]),
    )


def _channel_row(row: sqlite3.Row) -> ChannelRecord:
    return ChannelRecord(
        id=row["id"],
        server_id=row["server_id"],
        name=row["name"],
        auto_join=bool(row["auto_join"]),
        sort_order=int(row["sort_order"]),
    )


class Database:
    """A small SQLite-backed store for servers and channels."""

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_db()

    def _init_db(self) -> None:
        with self._lock:
            self._conn.executescript(SCHEMA_SQL)
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # -- servers ------------------------------------------------------------

    def save_server(self, settings: ServerSettings, *, sort_order: int = 0) -> ServerRecord:
        now = time.time()
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO servers (id, name, host, port, ssl, nickname, username, realname, password,
                                     sasl_account, sasl_password, auto_connect, sort_order, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  name=excluded.name, host=excluded.host, port=excluded.port, ssl=excluded.ssl,
                  nickname=excluded.nickname, username=excluded.username, realname=excluded.realname,
                  password=excluded.password, sasl_account=excluded.sasl_account,
                  sasl_password=excluded.sasl_password, auto_connect=excluded.auto_connect,
                  updated_at=excluded.updated_at
                """,
                (
                    settings.id,
                    settings.name,
                    settings.host,
                    settings.port,
                    int(settings.tls),
                    settings.nickname,
                    settings.username,
                    settings.realname,
                    settings.password,
                    settings.sasl_username,
                    settings.sasl_password,
                    int(settings.auto_connect),
                    sort_order,
                    now,
                    now,
                ),
            )
            self._conn.commit()
        record = self.get_server(settings.id)
        assert record is not None
        return record

    def get_server(self, server_id: str) -> ServerRecord | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM servers WHERE id = ?", (server_id,)).fetchone()
        return _server_row(row) if row else None

    def list_servers(self) -> list[ServerRecord]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM servers ORDER BY sort_order, created_at").fetchall()
        return [_server_row(r) for r in rows]

    def list_auto_connect_servers(self) -> list[ServerRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM servers WHERE auto_connect = 1 ORDER BY sort_order, created_at"
            ).fetchall()
        return [_server_row(r) for r in rows]

    def update_server(self, server_id: str, **fields: Any) -> None:
        unknown = set(fields) - _SERVER_COLUMNS
        if unknown:
            raise ValueError(f"unknown server fields: {sorted(unknown)}")
        if not fields:
            return
        assignments = ", ".join(f"{k} = ?" for k in fields)
        values = [int(v) if isinstance(v, bool) else v for v in fields.values()]
        with self._lock:
            self._conn.execute(
                f"UPDATE servers SET {assignments}, updated_at = ? WHERE id = ?",
                (*values, time.time(), server_id),
            )
            self._conn.commit()

    def delete_server(self, server_id: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM channels WHERE server_id = ?", (server_id,))
            self._conn.execute("DELETE FROM servers WHERE id = ?", (server_id,))
            self._conn.commit()

    # -- channels -----------------------------------------------------------

    def save_channel(self, server_id: str, name: str, *, auto_join: bool = True) -> ChannelRecord:
        name = normalize_channel_name(name)
        channel_id = channel_record_id(server_id, name)
        with self._lock:
            row = self._conn.execute(
                "SELECT COALESCE(MAX(sort_order), -1) + 1 AS next FROM channels WHERE server_id = ?",
                (server_id,),
            ).fetchone()
            self._conn.execute(
                """
                INSERT INTO channels (id, server_id, name, auto_join, sort_order, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET auto_join = excluded.auto_join
                """,
                (channel_id, server_id, name, int(auto_join), int(row["next"]), time.time()),
            )
            self._conn.commit()
            saved = self._conn.execute("SELECT * FROM channels WHERE id = ?", (channel_id,)).fetchone()
        return _channel_row(saved)

    def list_channels(self, server_id: str) -> list[ChannelRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM channels WHERE server_id = ? ORDER BY sort_order, created_at",
                (server_id,),
            ).fetchall()
        return [_channel_row(r) for r in rows]

    def list_auto_join_channels(self, server_id: str) -> list[ChannelRecord]:
        return [c for c in self.list_channels(server_id) if c.auto_join]

    def set_channel_auto_join(self, server_id: str, name: str, auto_join: bool) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE channels SET auto_join = ? WHERE id = ?",
                (int(auto_join), channel_record_id(server_id, normalize_channel_name(name))),
            )
            self._conn.commit()

    def delete_channel(self, server_id: str, name: str) -> None:
        with self._lock:
            self._conn.execute(
                "DELETE FROM channels WHERE id = ?",
                (channel_record_id(server_id, normalize_channel_name(name)),),
            )
            self._conn.commit()


def bootstrap_server(db: Database, settings: ServerSettings) -> ServerRecord:
    """Upsert a configured server and its auto-join channels without duplicating rows."""
    existing = db.get_server(settings.id)
    sort_order = existing.sort_order if existing else len(db.list_servers())
    record = db.save_server(settings, sort_order=sort_order)
    known = {c.name.lower() for c in db.list_channels(settings.id)}
    for name in settings.auto_join:
        normalized = normalize_channel_name(name)
        if normalized.lower() in known:
            continue
        db.save_channel(settings.id, normalized, auto_join=True)
        known.add(normalized.lower())
    logger.debug("Bootstrapped server {} ({} channels)", settings.name, len(known))
    return record
