"""Tests for routing protocol lines onto buffers."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from tests.mocks import connect_registered, make_client
from tobby import __version__
from tobby.events import (
    BufferCreated,
    BufferRemoved,
    ErrorRaised,
    MessageAdded,
    MessageUpdated,
)
from tobby.irc.dispatcher import mentions

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _joined(caps=(), names="tobby @op alice +bob"):
    """Registered client sitting in #chan with a NAMES list applied."""
    client, store, factory, recorder = make_client()
    await connect_registered(client, factory, caps=caps)
    factory.last.feed(
        ":tobby!u@h JOIN #chan",
        f":irc.test 353 tobby = #chan :{names}",
        ":irc.test 366 tobby #chan :End of /NAMES list.",
    )
    channel = store.get_server("srv1").get_channel("#chan")
    recorder.events.clear()
    return client, store, factory.last, recorder, channel


def _nicks(channel):
    return [m.nickname for m in channel.members]


class TestMentions:
    @pytest.mark.parametrize(
        "text",
        ["tobby: hi", "hey Tobby!", "ping tobby", "(tobby)"],
    )
    def test_whole_word_matches(self, text):
        assert mentions(text, "tobby")

    @pytest.mark.parametrize("text", ["tobbyfoo", "xtobby", "tob by", "tobby_"])
    def test_partial_words_do_not_match(self, text):
        assert not mentions(text, "tobby")

    def test_empty_nick(self):
        assert not mentions("anything", "")


# ---------------------------------------------------------------------------
# Membership
# ---------------------------------------------------------------------------


class TestMembership:
    @pytest.mark.asyncio
    async def test_self_join_creates_joined_channel(self):
        client, store, factory, recorder = make_client()
        await connect_registered(client, factory)
        factory.last.feed(":tobby!u@h JOIN #chan")

        channel = store.get_server("srv1").get_channel("#chan")
        assert channel.joined is True
        created = recorder.of(BufferCreated)
        assert created[-1].kind == "channel"
        assert created[-1].name == "#chan"

    @pytest.mark.asyncio
    async def test_self_join_requests_history(self):
        client, store, factory, _ = make_client()
        await connect_registered(client, factory, caps=("batch", "draft/chathistory"))
        factory.last.feed(":tobby!u@h JOIN #chan")
        assert factory.last.sent[-1] == "CHATHISTORY LATEST #chan * 50"

    @pytest.mark.asyncio
    async def test_names_applies_members_with_ranked_modes(self):
        *_, channel = await _joined(names="tobby @+carol +dave ~owner")
        assert _nicks(channel) == ["tobby", "carol", "dave", "owner"]
        carol = channel.get_member("carol")
        assert carol.modes == ["@", "+"]
        assert carol.prefix == "@"
        assert channel.get_member("owner").prefix == "~"

    @pytest.mark.asyncio
    async def test_other_join_adds_member(self):
        _, _, transport, recorder, channel = await _joined()
        transport.feed(":zed!z@h JOIN #chan")

        assert "zed" in _nicks(channel)
        added = recorder.of(MessageAdded)
        assert added[-1].message.type == "join"
        assert added[-1].message.content == "zed has joined #chan"
        assert added[-1].replayed is False

    @pytest.mark.asyncio
    async def test_extended_join_records_account(self):
        _, _, transport, _, channel = await _joined()
        transport.feed(":zed!z@h JOIN #chan zed_acct :Zed Realname")
        assert channel.get_member("zed").account == "zed_acct"

    @pytest.mark.asyncio
    async def test_replayed_join_leaves_members_alone(self):
        # Arrange
        _, _, transport, recorder, channel = await _joined()
        before = _nicks(channel)

        # Act
        transport.feed(
            ":irc.test BATCH +h1 chathistory #chan",
            "@batch=h1;time=2024-01-01T00:00:00.000Z :ghost!g@h JOIN #chan",
            ":irc.test BATCH -h1",
        )

        # Assert
        assert _nicks(channel) == before
        added = recorder.of(MessageAdded)
        assert len(added) == 1
        assert added[0].replayed is True
        assert added[0].message.content == "ghost has joined #chan"

    @pytest.mark.asyncio
    async def test_other_part_removes_member(self):
        _, _, transport, recorder, channel = await _joined()
        transport.feed(":alice!a@h PART #chan :later")
        assert "alice" not in _nicks(channel)
        assert recorder.of(MessageAdded)[-1].message.content == "alice has left #chan (later)"

    @pytest.mark.asyncio
    async def test_self_part_removes_buffer(self):
        _, store, transport, recorder, channel = await _joined()
        transport.feed(":tobby!u@h PART #chan")

        server = store.get_server("srv1")
        assert server.get_channel("#chan") is None
        assert recorder.of(BufferRemoved)[0].buffer_id == channel.id
        assert server.messages[-1].content == "tobby has left #chan"

    @pytest.mark.asyncio
    async def test_quit_removed_from_every_channel(self):
        # Arrange
        _, store, transport, recorder, chan = await _joined()
        transport.feed(":tobby!u@h JOIN #other", ":alice!a@h JOIN #other")
        other = store.get_server("srv1").get_channel("#other")
        recorder.events.clear()

        # Act
        transport.feed(":alice!a@h QUIT :bye")

        # Assert
        assert "alice" not in _nicks(chan)
        assert "alice" not in _nicks(other)
        quits = [e for e in recorder.of(MessageAdded) if e.message.type == "quit"]
        assert {e.buffer_id for e in quits} == {chan.id, other.id}
        assert quits[0].message.content == "alice has quit (bye)"

    @pytest.mark.asyncio
    async def test_nick_change_renames_member(self):
        _, _, transport, recorder, channel = await _joined()
        transport.feed(":alice!a@h NICK alicia")

        assert "alicia" in _nicks(channel)
        assert "alice" not in _nicks(channel)
        message = recorder.of(MessageAdded)[-1].message
        assert message.content == "alice is now known as alicia"
        assert message.sender == "alice"

    @pytest.mark.asyncio
    async def test_own_nick_change(self):
        client, store, transport, _, channel = await _joined()
        transport.feed(":tobby!u@h NICK tobby2")

        assert client.get("srv1").nick == "tobby2"
        assert store.get_server("srv1").nickname == "tobby2"
        assert "tobby2" in _nicks(channel)
        assert store.get_server("srv1").messages[-1].content == "tobby is now known as tobby2"

    @pytest.mark.asyncio
    async def test_self_kick_keeps_buffer(self):
        _, store, transport, recorder, channel = await _joined()
        transport.feed(":op!o@h KICK #chan tobby :behave")

        assert store.get_server("srv1").get_channel("#chan") is channel
        assert channel.joined is False
        assert channel.members == []
        assert recorder.of(MessageAdded)[-1].message.content == "tobby was kicked by op (behave)"

    @pytest.mark.asyncio
    async def test_other_kick_removes_member(self):
        _, _, transport, _, channel = await _joined()
        transport.feed(":op!o@h KICK #chan bob")
        assert "bob" not in _nicks(channel)
        assert channel.joined is True

    @pytest.mark.asyncio
    async def test_mode_toggles_member_status(self):
        # Arrange
        _, _, transport, recorder, channel = await _joined()

        # Act
        transport.feed(":op!o@h MODE #chan +o-v alice bob")

        # Assert
        assert channel.get_member("alice").modes == ["@"]
        assert channel.get_member("bob").modes == []
        assert recorder.of(MessageAdded)[-1].message.content == "op sets mode +o-v alice bob"

    @pytest.mark.asyncio
    async def test_user_mode_goes_to_server_buffer(self):
        _, store, transport, _, _ = await _joined()
        transport.feed(":tobby MODE tobby :+i")
        assert store.get_server("srv1").messages[-1].content == "tobby sets mode +i"

    @pytest.mark.asyncio
    async def test_away_and_account_notify(self):
        _, _, transport, _, channel = await _joined()
        transport.feed(":alice!a@h AWAY :lunch", ":alice!a@h ACCOUNT alice_acct")
        alice = channel.get_member("alice")
        assert alice.away is True
        assert alice.account == "alice_acct"

        transport.feed(":alice!a@h AWAY", ":alice!a@h ACCOUNT *")
        assert alice.away is False
        assert alice.account is None

    @pytest.mark.asyncio
    async def test_topic_change_and_reply(self):
        _, _, transport, recorder, channel = await _joined()
        transport.feed(":irc.test 332 tobby #chan :old topic")
        assert channel.topic == "old topic"

        transport.feed(":alice!a@h TOPIC #chan :new topic")
        assert channel.topic == "new topic"
        assert recorder.of(MessageAdded)[-1].message.content == "alice changed the topic to: new topic"

    @pytest.mark.asyncio
    async def test_topic_setter_recorded(self):
        # Arrange
        _, _, transport, recorder, channel = await _joined()

        # Act
        transport.feed(":irc.test 333 tobby #chan op!o@h 1700000000")

        # Assert
        assert channel.topic_set_by == "op"
        assert channel.topic_set_at == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
        assert recorder.of(MessageAdded) == []

        transport.feed("@time=2024-01-02T03:04:05.000Z :alice!a@h TOPIC #chan :new topic")
        assert channel.topic_set_by == "alice"
        assert channel.topic_set_at == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_topic_setter_bad_timestamp(self):
        _, _, transport, _, channel = await _joined()
        transport.feed(":irc.test 333 tobby #chan op notanumber")
        assert channel.topic_set_by == "op"
        assert channel.topic_set_at is None

    @pytest.mark.asyncio
    async def test_isupport_updates_network_and_prefix(self):
        client, store, factory, _ = make_client()
        conn = await connect_registered(client, factory)
        factory.last.feed(":irc.test 005 tobby NETWORK=TestNet PREFIX=(ov)@+ CHANTYPES=# :are supported by this server")
        assert store.get_server("srv1").network == "TestNet"
        assert conn.isupport.prefix == {"o": "@", "v": "+"}
        assert conn.isupport.is_channel("#x")
        assert not conn.isupport.is_channel("&x")


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class TestMessages:
    @pytest.mark.asyncio
    async def test_mention_marks_unread_and_mentioned(self):
        _, _, transport, _, channel = await _joined()
        transport.feed(":alice!a@h PRIVMSG #chan :hey tobby, look")

        message = channel.messages[-1]
        assert message.is_mention is True
        assert channel.unread_count == 1
        assert channel.is_mentioned is True

    @pytest.mark.asyncio
    async def test_focused_buffer_counts_nothing(self):
        client, _, transport, _, channel = await _joined()
        client.focus("srv1", channel.id)
        transport.feed(":alice!a@h PRIVMSG #chan :tobby hello")
        assert channel.unread_count == 0
        assert channel.is_mentioned is False

    @pytest.mark.asyncio
    async def test_focus_resets_unread(self):
        client, _, transport, _, channel = await _joined()
        transport.feed(":alice!a@h PRIVMSG #chan :one", ":alice!a@h PRIVMSG #chan :two")
        assert channel.unread_count == 2
        client.focus("srv1", channel.id)
        assert channel.unread_count == 0

    @pytest.mark.asyncio
    async def test_echoed_own_message(self):
        _, _, transport, _, channel = await _joined(caps=("echo-message",))
        transport.feed("@msgid=e1 :tobby!u@h PRIVMSG #chan :my own words about tobby")

        message = channel.messages[-1]
        assert message.is_own is True
        assert message.is_mention is False
        assert message.msgid == "e1"
        assert channel.unread_count == 0

    @pytest.mark.asyncio
    async def test_tags_carried_onto_message(self):
        _, _, transport, _, channel = await _joined()
        transport.feed("@msgid=m2;account=alice_acct;+draft/reply=m1 :alice!a@h PRIVMSG #chan :re")
        message = channel.messages[-1]
        assert message.msgid == "m2"
        assert message.account == "alice_acct"
        assert message.reply_to == "m1"

    @pytest.mark.asyncio
    async def test_action(self):
        _, _, transport, _, channel = await _joined()
        transport.feed(":alice!a@h PRIVMSG #chan :\x01ACTION waves\x01")
        assert channel.messages[-1].type == "action"
        assert channel.messages[-1].content == "waves"

    @pytest.mark.asyncio
    async def test_ctcp_version_answered(self):
        client, store, factory, _ = make_client()
        await connect_registered(client, factory)
        factory.last.feed(":alice!a@h PRIVMSG tobby :\x01VERSION\x01")
        assert factory.last.sent[-1] == f"NOTICE alice :\x01VERSION tobby {__version__}\x01"
        assert store.get_server("srv1").private_chats == []

    @pytest.mark.asyncio
    async def test_private_message_opens_chat(self):
        client, store, factory, recorder = make_client()
        await connect_registered(client, factory)
        factory.last.feed(":alice!a@h PRIVMSG tobby :hi there")

        chat = store.get_server("srv1").get_private_chat("alice")
        assert chat is not None
        assert chat.messages[-1].content == "hi there"
        assert recorder.of(BufferCreated)[-1].kind == "private"

    @pytest.mark.asyncio
    async def test_user_notice_without_chat_goes_to_server(self):
        client, store, factory, _ = make_client()
        await connect_registered(client, factory)
        factory.last.feed(":alice!a@h NOTICE tobby :fyi")
        server = store.get_server("srv1")
        assert server.private_chats == []
        assert server.messages[-1].type == "notice"
        assert server.messages[-1].content == "fyi"

    @pytest.mark.asyncio
    async def test_whisper_lands_in_channel(self):
        _, store, transport, _, channel = await _joined()
        transport.feed("@+draft/channel-context=#chan :alice!a@h PRIVMSG tobby :psst")
        assert channel.messages[-1].type == "whisper"
        assert channel.messages[-1].content == "psst"
        assert store.get_server("srv1").private_chats == []

    @pytest.mark.asyncio
    async def test_statusmsg_target(self):
        _, _, transport, _, channel = await _joined()
        transport.feed(":op!o@h NOTICE @#chan :ops only")
        assert channel.messages[-1].content == "ops only"

    @pytest.mark.asyncio
    async def test_replayed_message_not_counted(self):
        _, _, transport, recorder, channel = await _joined()
        transport.feed(
            ":irc.test BATCH +h1 chathistory #chan",
            "@batch=h1;msgid=old1;time=2024-01-01T00:00:00.000Z :alice!a@h PRIVMSG #chan :tobby earlier",
            ":irc.test BATCH -h1",
        )
        added = recorder.of(MessageAdded)
        assert added[-1].replayed is True
        assert channel.unread_count == 0
        assert channel.messages[-1].timestamp.year == 2024

    @pytest.mark.asyncio
    async def test_multiline_batch_becomes_one_message(self):
        # Arrange
        _, _, transport, recorder, channel = await _joined()

        # Act
        transport.feed(
            "@msgid=ml1 :alice!a@h BATCH +ml draft/multiline #chan",
            "@batch=ml :alice!a@h PRIVMSG #chan :line one",
            "@batch=ml;draft/multiline-concat :alice!a@h PRIVMSG #chan : continued",
            "@batch=ml :alice!a@h PRIVMSG #chan :line two",
        )
        assert recorder.of(MessageAdded) == []
        transport.feed(":alice!a@h BATCH -ml")

        # Assert
        added = recorder.of(MessageAdded)
        assert len(added) == 1
        message = added[0].message
        assert message.is_multiline is True
        assert message.lines == ["line one continued", "line two"]
        assert message.content == "line one continued\nline two"
        assert message.msgid == "ml1"

    @pytest.mark.asyncio
    async def test_redact_replaces_content(self):
        _, _, transport, recorder, channel = await _joined()
        transport.feed("@msgid=m1 :alice!a@h PRIVMSG #chan :oops")
        transport.feed(":alice!a@h REDACT #chan m1 :mistake")

        message = channel.messages[-1]
        assert message.redacted is True
        assert message.content == "[message deleted]"
        assert recorder.of(MessageUpdated)[-1].message is message

    @pytest.mark.asyncio
    async def test_malformed_line_is_dropped(self):
        _, _, transport, recorder, _ = await _joined()
        transport.feed("@a=b", ":only.prefix")
        assert recorder.events == []

    @pytest.mark.asyncio
    async def test_invite_goes_to_server_buffer(self):
        _, store, transport, _, _ = await _joined()
        transport.feed(":alice!a@h INVITE tobby #secret")
        assert store.get_server("srv1").messages[-1].content == "alice invited tobby to #secret"

    @pytest.mark.asyncio
    async def test_server_error_line(self):
        _, store, transport, _, _ = await _joined()
        transport.feed("ERROR :Closing link: too many connections")
        assert store.get_server("srv1").messages[-1].content == "ERROR: Closing link: too many connections"


# ---------------------------------------------------------------------------
# Numerics
# ---------------------------------------------------------------------------


class TestNumerics:
    @pytest.mark.asyncio
    async def test_motd_goes_to_server_buffer_even_when_focused(self):
        client, store, transport, _, channel = await _joined()
        client.focus("srv1", channel.id)
        transport.feed(":irc.test 372 tobby :- welcome to the motd")
        assert store.get_server("srv1").messages[-1].content == "- welcome to the motd"
        assert channel.messages[-1].content != "- welcome to the motd"

    @pytest.mark.asyncio
    async def test_error_numeric_routed_to_focused_buffer(self):
        # Arrange
        client, _, transport, recorder, channel = await _joined()
        client.focus("srv1", channel.id)

        # Act
        transport.feed(":irc.test 401 tobby nobody :No such nick/channel")

        # Assert
        assert channel.messages[-1].content == "nobody No such nick/channel"
        assert channel.messages[-1].type == "system"
        errors = recorder.of(ErrorRaised)
        assert errors[0].code == "401"
        assert errors[0].buffer_id == channel.id

    @pytest.mark.asyncio
    async def test_unfocused_numeric_goes_to_server_buffer(self):
        _, store, transport, _, _ = await _joined()
        transport.feed(":irc.test 401 tobby nobody :No such nick/channel")
        assert store.get_server("srv1").messages[-1].content == "nobody No such nick/channel"

    @pytest.mark.asyncio
    async def test_registered_expectation_takes_reply(self):
        # Arrange
        client, _, transport, recorder, channel = await _joined()
        denied = []
        client.set_mode("srv1", "#chan", "+o", "alice", on_denied=denied.append)
        assert transport.sent[-1] == "MODE #chan +o alice"

        # Act
        transport.feed(":irc.test 482 tobby #chan :You're not channel operator")

        # Assert
        assert len(denied) == 1
        assert denied[0].params[1] == "#chan"
        assert recorder.of(ErrorRaised) == []

        transport.feed(":irc.test 482 tobby #chan :You're not channel operator")
        assert len(denied) == 1
        assert recorder.of(ErrorRaised)[0].code == "482"

    @pytest.mark.asyncio
    async def test_nick_in_use_after_registration_is_an_error(self):
        _, _, transport, recorder, _ = await _joined()
        transport.feed(":irc.test 433 tobby taken :Nickname is already in use")
        assert recorder.of(ErrorRaised)[0].code == "433"
        assert "NICK taken_" not in transport.sent
