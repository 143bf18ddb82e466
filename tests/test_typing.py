"""Tests for typing indicators: inbound tracking and outbound debounce."""

from __future__ import annotations

import asyncio

import pytest

from tests.mocks import Recorder, connect_registered, make_client
from tobby.events import TypingChanged
from tobby.gateway import Bus
from tobby.irc.timers import TimerGroup
from tobby.irc.typing_tracker import TypingTracker
from tobby.store import BufferStore


def _tracker(timeout=10.0):
    bus = Bus()
    recorder = Recorder()
    bus.register(recorder)
    store = BufferStore(bus)
    store.add_server("srv1", "testnet", "irc.test", 6697, "tobby")
    channel = store.ensure_channel("srv1", "#c")
    timers = TimerGroup("srv1")
    tracker = TypingTracker(store, bus, timers, "srv1", own_nick="tobby", timeout=timeout)
    return tracker, channel, recorder, timers


class TestTypingTracker:
    @pytest.mark.asyncio
    async def test_set_and_clear(self):
        tracker, channel, recorder, timers = _tracker()
        tracker.set_typing(channel.id, "alice")
        tracker.set_typing(channel.id, "alice")
        assert tracker.users(channel.id) == ["alice"]
        assert len(recorder.of(TypingChanged)) == 1

        tracker.clear_typing(channel.id, "ALICE")
        assert tracker.users(channel.id) == []
        assert recorder.of(TypingChanged)[-1].users == []
        assert len(timers) == 0

    @pytest.mark.asyncio
    async def test_expires_after_timeout(self):
        tracker, channel, recorder, _ = _tracker(timeout=0.02)
        tracker.set_typing(channel.id, "alice")
        await asyncio.sleep(0.06)
        assert tracker.users(channel.id) == []
        assert [e.users for e in recorder.of(TypingChanged)] == [["alice"], []]

    @pytest.mark.asyncio
    async def test_refresh_rearms_expiry(self):
        tracker, channel, _, _ = _tracker(timeout=0.05)
        tracker.set_typing(channel.id, "alice")
        await asyncio.sleep(0.03)
        tracker.set_typing(channel.id, "alice")
        await asyncio.sleep(0.03)
        assert tracker.users(channel.id) == ["alice"]
        await asyncio.sleep(0.05)
        assert tracker.users(channel.id) == []

    @pytest.mark.asyncio
    async def test_own_nick_ignored(self):
        tracker, channel, recorder, _ = _tracker()
        tracker.set_typing(channel.id, "Tobby")
        assert tracker.users(channel.id) == []
        assert recorder.of(TypingChanged) == []

    @pytest.mark.asyncio
    async def test_rename_and_clear_user(self):
        tracker, channel, _, timers = _tracker()
        tracker.set_typing(channel.id, "alice")
        tracker.rename("alice", "alicia")
        assert tracker.users(channel.id) == ["alicia"]

        tracker.clear_user("alicia")
        assert tracker.users(channel.id) == []
        assert len(timers) == 0

    @pytest.mark.asyncio
    async def test_clear_all_cancels_timers(self):
        tracker, channel, _, timers = _tracker()
        tracker.set_typing(channel.id, "alice")
        tracker.set_typing(channel.id, "bob")
        timers.call_later("ping", 10, lambda: None)
        tracker.clear_all()
        assert timers.names == ["ping"]
        timers.cancel_all()


class TestTypingOnTheWire:
    @pytest.mark.asyncio
    async def test_tagmsg_active_then_message_clears(self):
        client, store, factory, _ = make_client()
        await connect_registered(client, factory)
        transport = factory.last
        transport.feed(":tobby!u@h JOIN #chan")
        channel = store.get_server("srv1").get_channel("#chan")

        transport.feed("@+typing=active :alice!a@h TAGMSG #chan")
        assert channel.typing == ["alice"]

        transport.feed(":alice!a@h PRIVMSG #chan :done typing")
        assert channel.typing == []

    @pytest.mark.asyncio
    async def test_tagmsg_done_clears(self):
        client, store, factory, _ = make_client()
        await connect_registered(client, factory)
        transport = factory.last
        transport.feed(":tobby!u@h JOIN #chan", "@+draft/typing=active :alice!a@h TAGMSG #chan")
        channel = store.get_server("srv1").get_channel("#chan")
        assert channel.typing == ["alice"]

        transport.feed("@+typing=done :alice!a@h TAGMSG #chan")
        assert channel.typing == []

    @pytest.mark.asyncio
    async def test_outbound_active_is_debounced(self):
        # Arrange
        client, _, factory, _ = make_client()
        await connect_registered(client, factory, caps=("message-tags",))
        transport = factory.last
        transport.sent.clear()

        # Act
        first = client.send_typing("srv1", "#chan")
        second = client.send_typing("srv1", "#CHAN")
        done = client.send_typing("srv1", "#chan", active=False)
        third = client.send_typing("srv1", "#chan")

        # Assert
        assert (first, second, done, third) == (True, False, True, True)
        assert transport.sent == [
            "@+typing=active TAGMSG #chan",
            "@+typing=done TAGMSG #chan",
            "@+typing=active TAGMSG #chan",
        ]

    @pytest.mark.asyncio
    async def test_outbound_needs_tags(self):
        client, _, factory, _ = make_client()
        await connect_registered(client, factory)
        factory.last.sent.clear()
        assert client.send_typing("srv1", "#chan") is False
        assert factory.last.sent == []

    @pytest.mark.asyncio
    async def test_paused_keeps_user_typing(self):
        client, store, factory, _ = make_client()
        await connect_registered(client, factory)
        transport = factory.last
        transport.feed(":tobby!u@h JOIN #chan", "@+typing=active :alice!a@h TAGMSG #chan")
        channel = store.get_server("srv1").get_channel("#chan")

        transport.feed("@+typing=paused :alice!a@h TAGMSG #chan")

        assert channel.typing == ["alice"]
        client.disconnect("srv1")


# ---------------------------------------------------------------------------
# Cleanup when leaving, disconnecting or reconnecting
# ---------------------------------------------------------------------------


async def _two_channels(**kwargs):
    """Registered client in #a and #b with bob typing in #b."""
    client, store, factory, recorder = make_client(**kwargs)
    conn = await connect_registered(client, factory)
    factory.last.feed(
        ":tobby!u@h JOIN #a",
        ":tobby!u@h JOIN #b",
        "@+typing=active :bob!b@h TAGMSG #b",
    )
    server = store.get_server("srv1")
    return client, conn, factory, recorder, server.get_channel("#b")


def _typing_timers(conn):
    return [name for name in conn.timers.names if name.startswith("typing:")]


class TestTypingCleanup:
    @pytest.mark.asyncio
    async def test_self_part_only_clears_that_channel(self):
        # Arrange
        client, conn, factory, _, chan_b = await _two_channels(typing_timeout=0.03)
        assert chan_b.typing == ["bob"]

        # Act
        factory.last.feed(":tobby!u@h PART #a")

        # Assert: bob's expiry in #b is still armed and still fires
        assert chan_b.typing == ["bob"]
        assert len(_typing_timers(conn)) == 1
        await asyncio.sleep(0.08)
        assert chan_b.typing == []
        client.disconnect("srv1")

    @pytest.mark.asyncio
    async def test_self_part_clears_parted_channel(self):
        client, conn, factory, recorder, _ = await _two_channels()
        factory.last.feed("@+typing=active :carol!c@h TAGMSG #a")
        chan_a = client.store.get_server("srv1").get_channel("#a")
        assert chan_a.typing == ["carol"]

        factory.last.feed(":tobby!u@h PART #a")

        assert chan_a.typing == []
        assert recorder.of(TypingChanged)[-1].users == []
        assert len(_typing_timers(conn)) == 1  # bob in #b
        client.disconnect("srv1")

    @pytest.mark.asyncio
    async def test_disconnect_clears_typing(self):
        # Arrange
        client, conn, _, recorder, chan_b = await _two_channels()

        # Act
        client.disconnect("srv1")

        # Assert
        assert chan_b.typing == []
        assert recorder.of(TypingChanged)[-1].buffer_id == chan_b.id
        assert recorder.of(TypingChanged)[-1].users == []
        assert _typing_timers(conn) == []

    @pytest.mark.asyncio
    async def test_reconnect_clears_typing(self):
        client, conn, factory, recorder, chan_b = await _two_channels(reconnect_delays=(5,))

        factory.last.drop(ConnectionResetError("reset"))

        assert chan_b.typing == []
        assert recorder.of(TypingChanged)[-1].users == []
        assert _typing_timers(conn) == []
        client.disconnect("srv1")
