"""Tests for gatekeeper.core.gatekeeper — the session state machine.

The LLM is mocked at gatekeeper.core.reply_processor.complete.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from conftest import NOW
from gatekeeper.core.errors import PersistenceFailure, SessionBusy
from gatekeeper.core.gatekeeper import (
    APOLOGY_MESSAGE,
    GatekeeperSession,
    SessionState,
)
from gatekeeper.data.models import ChatMessage, Sender

COMPLETE = "gatekeeper.core.reply_processor.complete"


def _session(stores, goal, scheduled=False):
    return GatekeeperSession(goal.id, stores, scheduled=scheduled, clock=lambda: NOW)


def _seed_history(stores, goal_id="g1"):
    stores.chat_history.append(ChatMessage(Sender.GATEKEEPER, "How's it going?", NOW.isoformat(), goal_id))
    stores.chat_history.append(ChatMessage(Sender.USER, "Fine", NOW.isoformat(), goal_id))


def _snapshot(stores, goal_id="g1"):
    return (
        stores.goals.get_goal(goal_id),
        stores.tasks.list_tasks(),
        stores.calendar.list_events(),
    )


class TestBootstrap:
    @pytest.mark.asyncio
    async def test_empty_history_generates_opening(self, stores, goal):
        session = _session(stores, goal)
        with patch(COMPLETE, new_callable=AsyncMock, return_value='{"message": "Hi! How is Ship v1?"}'):
            added = await session.bootstrap()

        assert [m.text for m in added] == ["Hi! How is Ship v1?"]
        assert session.state is SessionState.AWAITING_REPLY
        stored = stores.chat_history.list_messages(goal.id)
        assert [m.sender for m in stored] == [Sender.GATEKEEPER]

    @pytest.mark.asyncio
    async def test_history_manual_adds_nothing(self, stores, goal):
        _seed_history(stores)
        session = _session(stores, goal, scheduled=False)
        with patch(COMPLETE, new_callable=AsyncMock) as mock_complete:
            added = await session.bootstrap()

        assert added == []
        mock_complete.assert_not_called()
        assert len(session.messages) == 2
        assert len(stores.chat_history.list_messages(goal.id)) == 2
        assert session.state is SessionState.AWAITING_REPLY

    @pytest.mark.asyncio
    async def test_history_scheduled_adds_one_follow_up(self, stores, goal):
        _seed_history(stores)
        session = _session(stores, goal, scheduled=True)
        with patch(COMPLETE, new_callable=AsyncMock, return_value='{"message": "Back again!"}') as mock_complete:
            added = await session.bootstrap()

        assert [m.text for m in added] == ["Back again!"]
        assert len(stores.chat_history.list_messages(goal.id)) == 3
        assert "follow-up" in mock_complete.call_args.kwargs["system"]

    @pytest.mark.asyncio
    async def test_provider_failure_falls_back_to_template(self, stores, goal):
        session = _session(stores, goal)
        with patch(COMPLETE, new_callable=AsyncMock, side_effect=ConnectionError("offline")):
            added = await session.bootstrap()

        assert len(added) == 1
        assert "Accountability Gatekeeper" in added[0].text
        assert session.state is SessionState.AWAITING_REPLY

    @pytest.mark.asyncio
    async def test_malformed_opening_falls_back(self, stores, goal):
        session = _session(stores, goal)
        with patch(COMPLETE, new_callable=AsyncMock, return_value="<html>"):
            added = await session.bootstrap()
        assert '"Ship v1"' in added[0].text

    @pytest.mark.asyncio
    async def test_reentrant_bootstrap_dropped(self, stores, goal):
        session = _session(stores, goal)
        release = asyncio.Event()

        async def slow(**kwargs):
            await release.wait()
            return '{"message": "Hello"}'

        with patch(COMPLETE, new_callable=AsyncMock, side_effect=slow):
            first = asyncio.create_task(session.bootstrap())
            await asyncio.sleep(0)
            assert session.state is SessionState.BOOTSTRAPPING
            second = await session.bootstrap()
            release.set()
            added = await first

        assert second == []
        assert len(added) == 1
        assert len(stores.chat_history.list_messages(goal.id)) == 1

    @pytest.mark.asyncio
    async def test_missing_goal_raises(self, stores):
        session = GatekeeperSession("ghost", stores)
        with pytest.raises(LookupError):
            await session.bootstrap()
        assert session.state is SessionState.IDLE


class TestHandleReply:
    async def _open(self, stores, goal):
        session = _session(stores, goal)
        with patch(COMPLETE, new_callable=AsyncMock, return_value='{"message": "Hi"}'):
            await session.bootstrap()
        return session

    @pytest.mark.asyncio
    async def test_success_appends_reply_and_applies(self, stores, goal):
        session = await self._open(stores, goal)
        raw = '{"newCurrentState": "Beta", "reply": "Nice progress!"}'
        with patch(COMPLETE, new_callable=AsyncMock, return_value=raw):
            outcome = await session.handle_reply("We are in beta now")

        assert outcome.ok is True
        assert outcome.reply == "Nice progress!"
        assert outcome.dispatch.goal_modified is True
        assert stores.goals.get_goal(goal.id).current_state == "Beta"
        texts = [m.text for m in stores.chat_history.list_messages(goal.id)]
        assert texts == ["Hi", "We are in beta now", "Nice progress!"]
        assert session.state is SessionState.AWAITING_REPLY

    @pytest.mark.asyncio
    async def test_malformed_reply_leaves_state_untouched(self, stores, goal):
        session = await self._open(stores, goal)
        stores.tasks.add_task("Fix login", "work")
        before = _snapshot(stores)

        with patch(COMPLETE, new_callable=AsyncMock, return_value="{not json"):
            outcome = await session.handle_reply("done")

        assert outcome.ok is False
        assert outcome.reply == APOLOGY_MESSAGE
        assert _snapshot(stores) == before
        history = stores.chat_history.list_messages(goal.id)
        assert [m.text for m in history].count(APOLOGY_MESSAGE) == 1
        assert history[-1].sender is Sender.GATEKEEPER
        assert session.state is SessionState.AWAITING_REPLY

    @pytest.mark.asyncio
    async def test_timeout_reported(self, stores, goal):
        session = await self._open(stores, goal)

        async def slow(**kwargs):
            await asyncio.sleep(1)
            return "{}"

        with patch(COMPLETE, new_callable=AsyncMock, side_effect=slow), \
                patch("gatekeeper.core.reply_processor.settings.LLM_TIMEOUT_SECONDS", 0.01):
            outcome = await session.handle_reply("update")

        assert outcome.timed_out is True
        assert outcome.reply == APOLOGY_MESSAGE

    @pytest.mark.asyncio
    async def test_reply_while_processing_is_busy(self, stores, goal):
        session = await self._open(stores, goal)
        release = asyncio.Event()

        async def slow(**kwargs):
            await release.wait()
            return '{"reply": "ok"}'

        with patch(COMPLETE, new_callable=AsyncMock, side_effect=slow):
            first = asyncio.create_task(session.handle_reply("first"))
            await asyncio.sleep(0)
            with pytest.raises(SessionBusy):
                await session.handle_reply("second")
            release.set()
            await first

    @pytest.mark.asyncio
    async def test_reply_before_bootstrap_is_busy(self, stores, goal):
        with pytest.raises(SessionBusy):
            await _session(stores, goal).handle_reply("hello")

    @pytest.mark.asyncio
    async def test_close_during_processing_discards_result(self, stores, goal):
        session = await self._open(stores, goal)
        before = _snapshot(stores)
        release = asyncio.Event()

        async def slow(**kwargs):
            await release.wait()
            return '{"isCompleted": true, "reply": "Great job!"}'

        with patch(COMPLETE, new_callable=AsyncMock, side_effect=slow):
            pending = asyncio.create_task(session.handle_reply("done"))
            await asyncio.sleep(0)
            session.close()
            release.set()
            outcome = await pending

        assert outcome.discarded is True
        assert _snapshot(stores) == before
        assert "Great job!" not in [m.text for m in stores.chat_history.list_messages(goal.id)]


class TestClose:
    @pytest.mark.asyncio
    async def test_unsaved_messages_retried_on_close(self, stores, goal):
        session = _session(stores, goal)
        real_append = stores.chat_history.append
        with patch(COMPLETE, new_callable=AsyncMock, return_value='{"message": "Hi"}'), \
                patch.object(stores.chat_history, "append", side_effect=PersistenceFailure("locked")):
            added = await session.bootstrap()

        assert [m.text for m in session.messages] == ["Hi"]
        assert stores.chat_history.list_messages(goal.id) == []

        with patch.object(stores.chat_history, "append", side_effect=real_append):
            session.close()
        assert [m.text for m in stores.chat_history.list_messages(goal.id)] == ["Hi"]
        assert added[0].text == "Hi"
        assert session.state is SessionState.CLOSED

    def test_close_is_idempotent(self, stores, goal):
        session = _session(stores, goal)
        session.close()
        session.close()
        assert session.state is SessionState.CLOSED
