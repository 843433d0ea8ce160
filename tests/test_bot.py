"""Tests for YumiBot wiring, lifecycle and the inbound event stream."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from helpers import ADMIN, GROUP, USER, text_event
from yumi.bot import YumiBot, log_task_exception
from yumi.commands.base import CommandDescriptor
from yumi.continuations import ContinuationEntry
from yumi.dispatcher import DispatchOutcome
from yumi.models import GroupMetadata
from yumi.transport import (
    BridgeTransport,
    EVENT_CALL,
    EVENT_CONTACTS_UPDATE,
    EVENT_GROUP_PARTICIPANTS,
    EVENT_GROUPS_INVITE,
    EVENT_MESSAGES_UPSERT,
)


class TestWiring:

    def test_builtins_registered(self, bot):
        """Every built-in command is registered with source "builtin"."""
        assert bot.commands.names == frozenset({"help", "prefix", "poll", "cmd", "ping"})
        assert all(d.source == "builtin" for d in bot.commands.descriptors())

    def test_subscribes_to_transport_events(self, bot, transport):
        """The bot subscribes once to each bridge event it handles."""
        for event in (
            EVENT_MESSAGES_UPSERT,
            EVENT_GROUP_PARTICIPANTS,
            EVENT_CALL,
            EVENT_CONTACTS_UPDATE,
            EVENT_GROUPS_INVITE,
        ):
            assert len(transport.listeners[event]) == 1

    def test_context_exposes_plugin_loader(self, bot):
        """BotContext hands out the bot's own plugin loader and identity."""
        assert bot.context.plugin_loader is bot.plugin_loader
        assert bot.context.bot_id == bot.transport.bot_id

    def test_continuation_lifetimes_from_config(self, make_config, transport):
        """Registry default lifetimes come from the continuations settings."""
        bot = YumiBot(
            make_config(continuations={"reply_expire_ms": 1000, "reaction_expire_ms": 2000}),
            transport,
        )
        assert bot.replies.default_expire_ms == 1000
        assert bot.reactions.default_expire_ms == 2000


class TestInbound:

    @pytest.mark.asyncio
    async def test_upsert_spawns_one_task_per_message(self, bot, transport):
        """Each message in an upsert batch gets its own dispatch task."""
        tasks = bot._on_messages_upsert({
            "type": "notify",
            "messages": [text_event("!ping"), text_event("just chatting")],
        })

        outcomes = await asyncio.gather(*tasks)

        assert outcomes == [DispatchOutcome.EXECUTED, DispatchOutcome.NO_OP]
        assert len(transport.sent) == 1

    @pytest.mark.asyncio
    async def test_upsert_accepts_plain_list(self, bot):
        """A bare list payload is treated as the message batch."""
        tasks = bot._on_messages_upsert([text_event("!ping")])
        assert await asyncio.gather(*tasks) == [DispatchOutcome.EXECUTED]

    @pytest.mark.asyncio
    async def test_invalid_payload_ignored(self, bot):
        """Non-list, non-dict payloads spawn nothing."""
        assert bot._on_messages_upsert("garbage") == []

    @pytest.mark.asyncio
    async def test_duplicate_delivery_dispatched_once(self, bot, transport):
        """A redelivered message id is only dispatched once."""
        event = text_event("!ping", msg_id="DUP1")

        first = bot._on_messages_upsert([event])
        second = bot._on_messages_upsert([event])
        await asyncio.gather(*first)

        assert len(first) == 1
        assert second == []
        assert len(transport.sent) == 1

    def test_same_id_in_other_chat_not_duplicate(self, bot):
        """Dedup is keyed by chat and message id together."""
        assert bot._is_duplicate(text_event("a", chat=USER, msg_id="SAME")) is False
        assert bot._is_duplicate(text_event("a", chat=ADMIN, msg_id="SAME")) is False

    def test_dedup_window_expires(self, bot):
        """A message id seen over 60 s ago is accepted again."""
        event = text_event("a", msg_id="OLD")
        with patch("yumi.bot._time.time", return_value=1000.0):
            assert bot._is_duplicate(event) is False
        with patch("yumi.bot._time.time", return_value=1061.0):
            assert bot._is_duplicate(event) is False

    @pytest.mark.asyncio
    async def test_independent_chats_dispatch_concurrently(self, bot):
        """A slow handler in one chat should not hold up another chat."""
        gate = asyncio.Event()
        seen = []

        async def slow(ctx):
            seen.append(ctx.chat_id)
            await gate.wait()

        bot.commands.register(CommandDescriptor(name="wait", handler=slow))

        tasks = bot._on_messages_upsert([text_event("!wait", chat=USER), text_event("!wait", chat=ADMIN)])
        await asyncio.sleep(0.01)
        assert sorted(seen) == sorted([USER, ADMIN])

        gate.set()
        await asyncio.gather(*tasks)


class TestSideEvents:

    @pytest.mark.asyncio
    async def test_group_participants_logged_with_group_name(self, bot, transport):
        """Membership changes are logged with the group's subject."""
        transport.metadata[GROUP] = GroupMetadata(id=GROUP, subject="Team")

        with patch("yumi.bot.logger") as logger:
            bot._on_group_participants({"id": GROUP, "participants": [USER], "action": "add"})
            await asyncio.gather(*bot._tasks)

        logger.info.assert_called_once()
        args, kwargs = logger.info.call_args
        assert args == ("group_participants_update",)
        assert kwargs["group"] == "Team"
        assert kwargs["action"] == "add"
        assert kwargs["participants"] == ["...2222"]

    @pytest.mark.asyncio
    async def test_group_participants_name_lookup_failure(self, bot, transport):
        """A failed metadata lookup falls back to "Unknown Group"."""
        transport.group_metadata = AsyncMock(side_effect=RuntimeError("down"))

        with patch("yumi.bot.logger") as logger:
            bot._on_group_participants({"id": GROUP, "participants": [USER], "action": "remove"})
            await asyncio.gather(*bot._tasks)

        assert logger.info.call_args.kwargs["group"] == "Unknown Group"

    def test_incomplete_participant_update_ignored(self, bot):
        """Updates missing the group, participants or action spawn nothing."""
        with patch("yumi.bot.logger") as logger:
            bot._on_group_participants({"id": GROUP})
            bot._on_group_participants("garbage")
        assert bot._tasks == set()
        logger.info.assert_not_called()

    @pytest.mark.asyncio
    async def test_slow_group_lookup_does_not_stall_event_stream(self, make_config):
        """A hanging metadata lookup must not hold up the next bridge frame."""
        bridge = BridgeTransport("http://127.0.0.1:3000")
        bot = YumiBot(make_config(), bridge)
        release = asyncio.Event()

        async def slow_metadata(chat_id):
            await release.wait()
            return GroupMetadata(id=chat_id, subject="Team")

        bridge.group_metadata = slow_metadata
        participants = json.dumps({
            "event": EVENT_GROUP_PARTICIPANTS,
            "data": {"id": GROUP, "participants": [USER], "action": "add"},
        })
        upsert = json.dumps({"event": EVENT_MESSAGES_UPSERT, "data": [text_event("hello", msg_id="NEXT")]})

        with patch("yumi.bot.logger") as logger:
            await asyncio.wait_for(bridge._handle_frame(participants), timeout=1)
            await asyncio.wait_for(bridge._handle_frame(upsert), timeout=1)

            assert f"{USER}:NEXT" in bot._processed_messages
            logger.info.assert_not_called()

            release.set()
            await asyncio.gather(*bot._tasks)

        assert logger.info.call_args.kwargs["group"] == "Team"

    def test_incoming_call_logged(self, bot):
        """Ringing calls are logged with the video flag; other statuses are not."""
        with patch("yumi.bot.logger") as logger:
            bot._on_call([{"from": USER, "status": "offer", "isVideo": True}, {"status": "accept"}])

        logger.info.assert_called_once()
        assert logger.info.call_args.kwargs["video"] is True

    def test_contact_joined_logged(self, bot):
        """Only contacts with a notify name and status 200 are logged."""
        with patch("yumi.bot.logger") as logger:
            bot._on_contacts_update([{"id": USER, "notify": "New", "status": 200}, {"id": ADMIN}])
        assert logger.info.call_count == 1

    def test_group_invite_logged(self, bot):
        """Group invites are logged with their subject."""
        with patch("yumi.bot.logger") as logger:
            bot._on_group_invite({"subject": "Book club", "creator": ADMIN})
        assert logger.info.call_args.kwargs["group"] == "Book club"


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_and_stop(self, bot, transport):
        """start/stop drive the transport, plugins and continuation registries."""
        bot.plugin_loader.start_all = AsyncMock()
        bot.plugin_loader.stop_all = AsyncMock()

        await bot.start()
        assert transport.started is True
        assert bot.running is True
        bot.plugin_loader.start_all.assert_awaited_once()

        bot.replies.register(ContinuationEntry(target_message_id="X", callback=AsyncMock()))
        await bot.stop()

        assert transport.closed is True
        assert bot.running is False
        assert len(bot.replies) == 0
        bot.plugin_loader.stop_all.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, bot, transport):
        """A second stop() is a no-op."""
        await bot.start()
        await bot.stop()
        transport.closed = False

        await bot.stop()

        assert transport.closed is False

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_dispatch(self, bot):
        """stop() lets running dispatch tasks finish within the grace period."""
        finished = []

        async def slow():
            await asyncio.sleep(0.02)
            finished.append(True)

        await bot.start()
        bot.spawn(slow())
        await bot.stop()

        assert finished == [True]

    @pytest.mark.asyncio
    async def test_run_stops_when_event_stream_ends(self, bot, transport):
        """run() shuts down once the event stream returns."""
        await bot.run()
        assert transport.started is True
        assert transport.closed is True


class TestTaskExceptions:

    @pytest.mark.asyncio
    async def test_failed_task_is_logged(self):
        """A task that raised is logged with its exception type."""
        async def boom():
            raise ValueError("bad")

        task = asyncio.get_running_loop().create_task(boom())
        await asyncio.sleep(0)

        with patch("yumi.bot.logger") as logger:
            log_task_exception(task)

        logger.error.assert_called_once()
        assert logger.error.call_args.kwargs["exc_type"] == "ValueError"

    @pytest.mark.asyncio
    async def test_cancelled_task_ignored(self):
        """Cancelled tasks are not reported as failures."""
        task = asyncio.get_running_loop().create_task(asyncio.sleep(10))
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        logger = MagicMock()
        with patch("yumi.bot.logger", logger):
            log_task_exception(task)
        logger.error.assert_not_called()
