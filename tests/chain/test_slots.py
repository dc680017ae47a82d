"""Tests for the slot notification stream."""

import json
from unittest.mock import AsyncMock

import pytest

from steal_token_indexer.chain.slots import ConnectionState, SlotStreamHandler


def _notification(slot: int) -> str:
    return json.dumps(
        {
            "jsonrpc": "2.0",
            "method": "slotNotification",
            "params": {"result": {"parent": slot - 1, "root": slot - 32, "slot": slot}, "subscription": 0},
        }
    )


class TestHandleMessage:
    """Tests for message parsing."""

    @pytest.mark.asyncio
    async def test_notification_invokes_callback(self) -> None:
        on_slot = AsyncMock()
        handler = SlotStreamHandler(host="ws://localhost:8900", on_slot=on_slot)

        await handler._handle_message(_notification(5000))

        on_slot.assert_awaited_once_with(5000)
        assert handler.stats.notifications_received == 1
        assert handler.stats.last_slot == 5000
        assert handler.stats.last_message_time is not None

    @pytest.mark.asyncio
    async def test_subscription_ack_ignored(self) -> None:
        on_slot = AsyncMock()
        handler = SlotStreamHandler(host="ws://localhost:8900", on_slot=on_slot)

        await handler._handle_message(json.dumps({"jsonrpc": "2.0", "result": 0, "id": 1}))

        on_slot.assert_not_awaited()
        assert handler.stats.notifications_received == 0

    @pytest.mark.asyncio
    async def test_invalid_json_ignored(self) -> None:
        on_slot = AsyncMock()
        handler = SlotStreamHandler(host="ws://localhost:8900", on_slot=on_slot)

        await handler._handle_message("{not json")

        on_slot.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_malformed_notification_ignored(self) -> None:
        on_slot = AsyncMock()
        handler = SlotStreamHandler(host="ws://localhost:8900", on_slot=on_slot)

        await handler._handle_message(json.dumps({"method": "slotNotification", "params": {"result": {}}}))

        on_slot.assert_not_awaited()
        assert handler.stats.last_slot is None


class TestLifecycle:
    """Tests for state handling."""

    def test_initial_state(self) -> None:
        handler = SlotStreamHandler(host="ws://localhost:8900")
        assert handler.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_state_change_callback(self) -> None:
        on_state_change = AsyncMock()
        handler = SlotStreamHandler(host="ws://localhost:8900", on_state_change=on_state_change)

        await handler._set_state(ConnectionState.CONNECTING)
        await handler._set_state(ConnectionState.CONNECTING)

        on_state_change.assert_awaited_once_with(ConnectionState.CONNECTING)

    @pytest.mark.asyncio
    async def test_stop_before_start_is_noop(self) -> None:
        handler = SlotStreamHandler(host="ws://localhost:8900")
        await handler.stop()
        assert handler.state == ConnectionState.DISCONNECTED
