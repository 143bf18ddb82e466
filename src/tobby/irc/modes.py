"""Channel mode strings and the ISUPPORT tokens that shape them."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import NamedTuple

from tobby.core.constants import DEFAULT_CHANMODES, DEFAULT_CHANTYPES, DEFAULT_PREFIX
from tobby.store.models import Channel, Member


class ModeChange(NamedTuple):
    adding: bool
    letter: str
    arg: str | None


def parse_prefix(value: str) -> dict[str, str]:
    """``(qaohv)~&@%+`` -> ordered {letter: symbol}, highest rank first."""
    if not value.startswith("(") or ")" not in value:
        return {}
    letters, symbols = value[1:].split(")", 1)
    return dict(zip(letters, symbols))


def parse_chanmodes(value: str) -> tuple[str, str, str, str]:
    """``A,B,C,D`` mode type groups; missing groups are empty."""
    groups = value.split(",")
    groups += [""] * (4 - len(groups))
    return groups[0], groups[1], groups[2], groups[3]


@dataclass
class ISupport:
    """Server-announced parameters from RPL_ISUPPORT (005)."""

    prefix: dict[str, str] = field(default_factory=lambda: parse_prefix(DEFAULT_PREFIX))
    chanmodes: tuple[str, str, str, str] = field(default_factory=lambda: parse_chanmodes(DEFAULT_CHANMODES))
    chantypes: str = DEFAULT_CHANTYPES
    network: str | None = None
    tokens: dict[str, str] = field(default_factory=dict)

    def update(self, params: Iterable[str]) -> None:
        for token in params:
            if not token or token.startswith("-"):
                continue
            key, _, value = token.partition("=")
            self.tokens[key] = value
            if key == "PREFIX":
                parsed = parse_prefix(value)
                if parsed or value == "":
                    self.prefix = parsed
            elif key == "CHANMODES":
                self.chanmodes = parse_chanmodes(value)
            elif key == "CHANTYPES":
                self.chantypes = value
            elif key == "NETWORK":
                self.network = value or None

    @property
    def symbols(self) -> str:
        return "".join(self.prefix.values())

    def is_channel(self, target: str) -> bool:
        return bool(target) and target[0] in self.chantypes

    def rank(self, symbol: str) -> int:
        try:
            return self.symbols.index(symbol)
        except ValueError:
            return len(self.prefix)

    def takes_arg(self, letter: str, adding: bool) -> bool:
        list_modes, always, on_set, _ = self.chanmodes
        if letter in self.prefix or letter in list_modes or letter in always:
            return True
        return adding and letter in on_set

    def split_nick(self, name: str) -> tuple[list[str], str]:
        """Peel status symbols off a NAMES entry: ``@+alice`` -> (['@', '+'], 'alice')."""
        symbols: list[str] = []
        i = 0
        while i < len(name) and name[i] in self.symbols:
            symbols.append(name[i])
            i += 1
        return symbols, name[i:]


def iter_mode_changes(modestring: str, args: list[str], isupport: ISupport) -> list[ModeChange]:
    """Walk a mode string left to right.

    Letters taking an argument consume the next one from ``args``; unknown
    letters consume nothing. A letter that needs an argument when none is left
    is reported with ``arg=None``.
    """
    changes: list[ModeChange] = []
    adding = True
    remaining = list(args)
    for letter in modestring:
        if letter == "+":
            adding = True
            continue
        if letter == "-":
            adding = False
            continue
        arg = None
        if isupport.takes_arg(letter, adding):
            arg = remaining.pop(0) if remaining else None
        changes.append(ModeChange(adding, letter, arg))
    return changes


def apply_member_modes(channel: Channel, changes: list[ModeChange], isupport: ISupport) -> list[Member]:
    """Toggle status symbols for prefix-mode changes. Returns the members touched."""
    touched: list[Member] = []
    for change in changes:
        symbol = isupport.prefix.get(change.letter)
        if symbol is None or not change.arg:
            continue
        member = channel.get_member(change.arg)
        if member is None:
            continue
        if change.adding and symbol not in member.modes:
            member.modes.append(symbol)
            member.modes.sort(key=isupport.rank)
        elif not change.adding and symbol in member.modes:
            member.modes.remove(symbol)
        if member not in touched:
            touched.append(member)
    return touched
