"""Tests for the IRC wire codec."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from hypothesis import given
from hypothesis import strategies as st

from tobby.core.errors import ProtocolError
from tobby.irc.parser import (
    Source,
    build_line,
    escape_tag_value,
    parse_line,
    parse_params,
    parse_source,
    unescape_tag_value,
)


class TestParseLine:
    def test_plain_command(self):
        msg = parse_line("PING :irc.test\r\n")
        assert msg.command == "PING"
        assert msg.params == ["irc.test"]
        assert msg.tags == {}
        assert msg.source == Source()

    def test_source_and_trailing(self):
        msg = parse_line(":alice!al@host.example PRIVMSG #chan :hello there")
        assert msg.source.nick == "alice"
        assert msg.source.user == "al"
        assert msg.source.host == "host.example"
        assert msg.params == ["#chan", "hello there"]

    def test_command_is_uppercased(self):
        assert parse_line("privmsg #a :x").command == "PRIVMSG"

    def test_tags_parsed_and_unescaped(self):
        # Arrange
        line = r"@msgid=abc;+draft/react=\:)\s!;flag :bob!b@h TAGMSG #chan"

        # Act
        msg = parse_line(line)

        # Assert
        assert msg.tags == {"msgid": "abc", "+draft/react": ";) !", "flag": ""}
        assert msg.command == "TAGMSG"

    def test_server_time_tag(self):
        msg = parse_line("@time=2024-05-01T12:30:00.000Z :a!b@c PRIVMSG #x :hi")
        assert msg.time == datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)

    def test_missing_time_falls_back_to_now(self):
        before = datetime.now(timezone.utc)
        msg = parse_line(":a!b@c PRIVMSG #x :hi")
        assert msg.time >= before

    def test_batch_property(self):
        assert parse_line("@batch=xyz :a!b@c PRIVMSG #x :hi").batch == "xyz"

    def test_middle_params_without_trailing(self):
        assert parse_line(":srv 353 me = #chan :@a +b c").params == ["me", "=", "#chan", "@a +b c"]

    def test_no_params(self):
        msg = parse_line("AUTHENTICATE")
        assert msg.command == "AUTHENTICATE"
        assert msg.params == []

    @pytest.mark.parametrize("line", ["", "   ", "@a=b", ":prefix.only", "@a=b :src"])
    def test_malformed_lines_raise(self, line):
        with pytest.raises(ProtocolError):
            parse_line(line)

    def test_param_default(self):
        msg = parse_line("NICK")
        assert msg.param(0, "x") == "x"


class TestParseSource:
    def test_full_mask(self):
        assert parse_source("n!u@h") == Source("n!u@h", "n", "u", "h")

    def test_server_name(self):
        src = parse_source("irc.example.net")
        assert src.nick == ""
        assert src.name == "irc.example.net"

    def test_bare_nick(self):
        assert parse_source("alice").nick == "alice"

    def test_nick_at_host(self):
        src = parse_source("alice@host")
        assert (src.nick, src.host) == ("alice", "host")


class TestParseParams:
    def test_only_trailing(self):
        assert parse_params(":a b c") == ["a b c"]

    def test_empty_trailing(self):
        assert parse_params("* LS :") == ["*", "LS", ""]

    def test_repeated_spaces_ignored(self):
        assert parse_params("a  b") == ["a", "b"]


class TestTagEscaping:
    def test_unescape_all_sequences(self):
        assert unescape_tag_value(r"a\:b\sc\\d\re\nf") == "a;b c\\d\re\nf"

    def test_trailing_backslash_dropped(self):
        assert unescape_tag_value("abc\\") == "abc"

    def test_unknown_escape_keeps_char(self):
        assert unescape_tag_value(r"\x") == "x"

    @given(st.text(alphabet=st.characters(blacklist_categories=("Cs",)), max_size=50))
    def test_escape_is_reversible(self, value):
        """Property: unescape(escape(v)) == v for any value."""
        assert unescape_tag_value(escape_tag_value(value)) == value


class TestBuildLine:
    def test_simple(self):
        assert build_line("NICK", "tobby") == "NICK tobby"

    def test_trailing_added_when_needed(self):
        assert build_line("PRIVMSG", "#c", "hello world") == "PRIVMSG #c :hello world"
        assert build_line("PRIVMSG", "#c", ":)") == "PRIVMSG #c ::)"
        assert build_line("TOPIC", "#c", "") == "TOPIC #c :"

    def test_forced_trailing(self):
        assert build_line("PING", "tag", trailing=True) == "PING :tag"

    def test_tags_escaped_and_bare(self):
        line = build_line("TAGMSG", "#c", tags={"+draft/react": "a b", "draft/multiline-concat": None})
        assert line == r"@+draft/react=a\sb;draft/multiline-concat TAGMSG #c"

    def test_built_line_parses_back(self):
        line = build_line("PRIVMSG", "#c", "hi there", tags={"+draft/reply": "m1"})
        msg = parse_line(line)
        assert msg.tags == {"+draft/reply": "m1"}
        assert msg.params == ["#c", "hi there"]
