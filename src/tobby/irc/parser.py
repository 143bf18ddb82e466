"""IRC wire codec: IRCv3 tags, source prefix, command, params."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

from tobby.core.errors import ProtocolError

_TAG_UNESCAPE = {":": ";", "s": " ", "\\": "\\", "r": "\r", "n": "\n"}
_TAG_ESCAPE = {";": "\\:", " ": "\\s", "\\": "\\\\", "\r": "\\r", "\n": "\\n"}


@dataclass(frozen=True)
class Source:
    """Message prefix, ``nick!user@host`` or a bare server name."""

    raw: str = ""
    nick: str = ""
    user: str = ""
    host: str = ""

    @property
    def name(self) -> str:
        """Nickname if present, otherwise the raw prefix (server name)."""
        return self.nick or self.raw


@dataclass
class Message:
    """One decoded IRC line."""

    command: str
    params: list[str] = field(default_factory=list)
    tags: dict[str, str] = field(default_factory=dict)
    source: Source = field(default_factory=Source)
    raw: str = ""

    @property
    def time(self) -> datetime:
        """Server time from the ``time`` tag, or now."""
        value = self.tags.get("time")
        if value:
            try:
                return datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                pass
        return datetime.now(timezone.utc)

    @property
    def batch(self) -> str | None:
        return self.tags.get("batch")

    def param(self, index: int, default: str = "") -> str:
        try:
            return self.params[index]
        except IndexError:
            return default


def unescape_tag_value(value: str) -> str:
    """Undo IRCv3 tag value escaping. A trailing lone backslash is dropped."""
    if "\\" not in value:
        return value
    out: list[str] = []
    i = 0
    while i < len(value):
        ch = value[i]
        if ch == "\\":
            if i + 1 < len(value):
                nxt = value[i + 1]
                out.append(_TAG_UNESCAPE.get(nxt, nxt))
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def escape_tag_value(value: str) -> str:
    return "".join(_TAG_ESCAPE.get(ch, ch) for ch in value)


def parse_tags(raw: str) -> dict[str, str]:
    tags: dict[str, str] = {}
    for item in raw.split(";"):
        if not item:
            continue
        if "=" in item:
            key, value = item.split("=", 1)
            tags[key] = unescape_tag_value(value)
        else:
            tags[item] = ""
    return tags


def parse_source(raw: str) -> Source:
    if not raw:
        return Source()
    nick, sep, rest = raw.partition("!")
    if sep:
        user, _, host = rest.partition("@")
        return Source(raw, nick, user, host)
    nick, sep, host = raw.partition("@")
    if sep:
        return Source(raw, nick, "", host)
    # Bare server names contain a dot; bare nicks do not
    if "." in raw:
        return Source(raw, "", "", raw)
    return Source(raw, raw, "", "")


def parse_params(raw: str) -> list[str]:
    if not raw:
        return []
    if raw.startswith(":"):
        return [raw[1:]]
    index = raw.find(" :")
    if index == -1:
        return [p for p in raw.split(" ") if p]
    params = [p for p in raw[:index].split(" ") if p]
    params.append(raw[index + 2 :])
    return params


def parse_line(line: str) -> Message:
    """Decode one line (terminator optional). Raises ProtocolError when malformed."""
    raw = line.rstrip("\r\n")
    rest = raw.lstrip(" ")
    tags: dict[str, str] = {}
    if rest.startswith("@"):
        tag_str, sep, rest = rest[1:].partition(" ")
        if not sep:
            raise ProtocolError("Tags without command", code="malformed_line", details={"line": raw})
        tags = parse_tags(tag_str)
        rest = rest.lstrip(" ")
    source = Source()
    if rest.startswith(":"):
        prefix, sep, rest = rest[1:].partition(" ")
        if not sep:
            raise ProtocolError("Prefix without command", code="malformed_line", details={"line": raw})
        source = parse_source(prefix)
        rest = rest.lstrip(" ")
    command, _, param_str = rest.partition(" ")
    if not command:
        raise ProtocolError("Empty command", code="malformed_line", details={"line": raw})
    return Message(
        command=command.upper(),
        params=parse_params(param_str.lstrip(" ")),
        tags=tags,
        source=source,
        raw=raw,
    )


def build_line(
    command: str,
    *params: str,
    tags: dict[str, str | None] | None = None,
    trailing: bool = False,
) -> str:
    """Encode an outgoing line without the terminator.

    The last param gets a ``:`` prefix when ``trailing`` is set or when it
    needs one (empty, contains a space, starts with ``:``). A tag with value
    None is sent as a bare key.
    """
    parts: list[str] = []
    if tags:
        encoded = [key if value is None else f"{key}={escape_tag_value(value)}" for key, value in tags.items()]
        parts.append("@" + ";".join(encoded))
    parts.append(command)
    if params:
        *middle, last = params
        parts.extend(middle)
        if trailing or not last or " " in last or last.startswith(":"):
            last = ":" + last
        parts.append(last)
    return " ".join(parts)
