"""Config schema and accessor."""

from __future__ import annotations

import os
import re
import uuid
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from tobby.core.constants import (
    BACKOFF_LADDER,
    CHANNEL_NAMESPACE,
    DEFAULT_PORT,
    DEFAULT_TLS_PORT,
    HISTORY_LIMIT,
    PING_INTERVAL,
    PONG_TIMEOUT,
    TYPING_TIMEOUT,
    WANTED_CAPS,
)
from tobby.core.errors import ConfigurationError

# Env keys that override config (centralized; loaded once per reload)
_ENV_OVERRIDE_KEYS = (
    "TOBBY_NICK",
    "TOBBY_DB_PATH",
    "TOBBY_TLS_VERIFY",
    "TOBBY_HISTORY_LIMIT",
)


def _load_env_overrides() -> dict[str, str]:
    """Load env overrides once per reload."""
    return {k: os.environ.get(k, "") for k in _ENV_OVERRIDE_KEYS}


def _parse_bool_env(val: str) -> bool | None:
    """Parse env string to bool; None if not a recognized bool."""
    v = val.lower()
    if v in ("1", "true", "yes"):
        return True
    if v in ("0", "false", "no"):
        return False
    return None


def default_username(nickname: str) -> str:
    """USER ident derived from the nickname: alphanumerics only, at most 9 chars."""
    return re.sub(r"[^A-Za-z0-9]", "", nickname)[:9] or "tobby"


def server_id_for(name: str) -> str:
    """Deterministic server id for a configured server name."""
    return str(uuid.uuid5(CHANNEL_NAMESPACE, f"server:{name}"))


@dataclass
class ServerSettings:
    """Identity and credentials for one configured server."""

    id: str
    name: str
    host: str
    port: int
    tls: bool
    nickname: str
    username: str = ""
    realname: str = ""
    password: str | None = None
    sasl_username: str | None = None
    sasl_password: str | None = None
    auto_connect: bool = False
    tls_verify: bool = False
    auto_join: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.username:
            self.username = default_username(self.nickname)
        if not self.realname:
            self.realname = self.nickname

    @property
    def url(self) -> str:
        scheme = "ircs" if self.tls else "irc"
        return f"{scheme}://{self.host}:{self.port}"

    @property
    def has_sasl(self) -> bool:
        return bool(self.sasl_username and self.sasl_password)

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, default_nick: str = "tobby", tls_verify: bool = False) -> ServerSettings:
        """Build settings from a ``servers:`` config entry."""
        host = str(data.get("host", "")).strip()
        name = str(data.get("name") or host)
        tls = bool(data.get("tls", data.get("ssl", True)))
        port = int(data.get("port") or (DEFAULT_TLS_PORT if tls else DEFAULT_PORT))
        sasl = data.get("sasl") if isinstance(data.get("sasl"), dict) else {}
        auto_join = data.get("auto_join") or data.get("channels") or []
        return cls(
            id=str(data.get("id") or server_id_for(name)),
            name=name,
            host=host,
            port=port,
            tls=tls,
            nickname=str(data.get("nickname") or default_nick),
            username=str(data.get("username") or ""),
            realname=str(data.get("realname") or ""),
            password=data.get("password") or None,
            sasl_username=sasl.get("username") or sasl.get("account") or None,
            sasl_password=sasl.get("password") or None,
            auto_connect=bool(data.get("auto_connect", True)),
            tls_verify=bool(data.get("tls_verify", tls_verify)),
            auto_join=[str(c) for c in auto_join] if isinstance(auto_join, list) else [],
        )


class Config:
    """Config accessor with attribute-style access for nested keys."""

    def __init__(self, data: dict[str, Any] | None = None) -> None:
        self._data = data or {}
        self._env: dict[str, str] = _load_env_overrides()

    def reload(self, data: dict[str, Any], *, validate: bool = True) -> None:
        """Replace config data."""
        self._data = data or {}
        self._env = _load_env_overrides()
        if validate:
            self._validate()
        logger.debug("Config reloaded: {} servers", len(self.servers))

    def _validate(self) -> None:
        """Validate config structure; raise ConfigurationError on failure."""
        servers = self._data.get("servers")
        if servers is not None and not isinstance(servers, list):
            raise ConfigurationError(
                "servers must be a list",
                code="invalid_servers",
                details={"type": type(servers).__name__},
            )
        for i, item in enumerate(servers or []):
            if not isinstance(item, dict):
                raise ConfigurationError(
                    f"servers[{i}] must be a dict",
                    code="invalid_server_item",
                    details={"index": i},
                )
            if not item.get("host"):
                raise ConfigurationError(
                    f"servers[{i}] missing host",
                    code="missing_host",
                    details={"index": i},
                )
            port = item.get("port")
            if port is not None and not (isinstance(port, int) and 0 < port < 65536):
                raise ConfigurationError(
                    f"servers[{i}] has invalid port",
                    code="invalid_port",
                    details={"index": i, "port": port},
                )
        ladder = self._data.get("reconnect_delays")
        if ladder is not None and (not isinstance(ladder, list) or not ladder):
            raise ConfigurationError(
                "reconnect_delays must be a non-empty list",
                code="invalid_reconnect_delays",
            )

    @property
    def raw(self) -> dict[str, Any]:
        return self._data

    def get(self, key: str, default: Any = None) -> Any:
        """Get value by dot-separated path."""
        parts = key.split(".")
        obj: Any = self._data
        for part in parts:
            if isinstance(obj, dict) and part in obj:
                obj = obj[part]
            else:
                return default
        return obj

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __contains__(self, key: str) -> bool:
        return key in self._data

    @property
    def nickname(self) -> str:
        env_val = self._env.get("TOBBY_NICK", "").strip()
        if env_val:
            return env_val
        return str(self._data.get("nickname", "tobby"))

    @property
    def database_path(self) -> str:
        env_val = self._env.get("TOBBY_DB_PATH", "").strip()
        if env_val:
            return env_val
        return str(self._data.get("database_path", "tobby.db"))

    @property
    def tls_verify(self) -> bool:
        parsed = _parse_bool_env(self._env.get("TOBBY_TLS_VERIFY", ""))
        if parsed is not None:
            return parsed
        return bool(self._data.get("tls_verify", False))

    @property
    def history_limit(self) -> int:
        env_val = self._env.get("TOBBY_HISTORY_LIMIT", "").strip()
        if env_val.isdigit():
            return int(env_val)
        return int(self._data.get("history_limit", HISTORY_LIMIT))

    @property
    def ping_interval(self) -> float:
        return float(self._data.get("ping_interval", PING_INTERVAL))

    @property
    def pong_timeout(self) -> float:
        return float(self._data.get("pong_timeout", PONG_TIMEOUT))

    @property
    def typing_timeout(self) -> float:
        return float(self._data.get("typing_timeout", TYPING_TIMEOUT))

    @property
    def reconnect_delays(self) -> tuple[float, ...]:
        val = self._data.get("reconnect_delays")
        if isinstance(val, list) and val:
            return tuple(float(v) for v in val)
        return BACKOFF_LADDER

    @property
    def capabilities(self) -> tuple[str, ...]:
        val = self._data.get("capabilities")
        if isinstance(val, list):
            return tuple(str(c) for c in val)
        return WANTED_CAPS

    @property
    def servers(self) -> list[ServerSettings]:
        """Configured servers as settings objects."""
        entries = self._data.get("servers")
        if not isinstance(entries, list):
            return []
        return [
            ServerSettings.from_dict(item, default_nick=self.nickname, tls_verify=self.tls_verify)
            for item in entries
            if isinstance(item, dict) and item.get("host")
        ]


cfg = Config()
