"""Tests for the keyed grace-period scheduler."""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from backend.roomhub.grace import GracePeriodScheduler


class TestStart:
    async def test_start_registers_timer(self, scheduler):
        scheduler.start("ROOM123", MagicMock())
        assert scheduler.has("ROOM123")
        assert len(scheduler) == 1

    async def test_callback_runs_after_duration_with_key(self, scheduler, timers):
        """Callback fires at exactly the configured duration, not before."""
        callback = MagicMock()
        scheduler.start("ROOM456", callback)

        timers.advance(59)
        await scheduler.drain()
        callback.assert_not_called()

        timers.advance(1)
        await scheduler.drain()
        callback.assert_called_once_with("ROOM456")

    async def test_timer_removed_before_callback_runs(self, scheduler, timers):
        seen = []
        scheduler.start("ROOM789", lambda key: seen.append(scheduler.has(key)))

        timers.advance(60)
        await scheduler.drain()

        assert seen == [False]
        assert not scheduler.has("ROOM789")
        assert len(scheduler) == 0

    async def test_restart_replaces_pending_timer(self, scheduler, timers):
        """Two starts in a row yield one invocation, from the second callback."""
        first, second = MagicMock(), MagicMock()
        scheduler.start("ROOMABC", first)
        scheduler.start("ROOMABC", second)
        assert timers.armed == 1

        timers.advance(120)
        await scheduler.drain()

        first.assert_not_called()
        second.assert_called_once_with("ROOMABC")

    async def test_restart_resets_the_delay(self, scheduler, timers):
        callback = MagicMock()
        scheduler.start("ROOM", callback)
        timers.advance(30)
        scheduler.start("ROOM", callback)

        timers.advance(59)
        await scheduler.drain()
        callback.assert_not_called()

        timers.advance(1)
        await scheduler.drain()
        callback.assert_called_once()

    async def test_async_callback_is_awaited(self, scheduler, timers):
        callback = AsyncMock()
        scheduler.start("ROOMASYNC", callback)

        timers.advance(60)
        await scheduler.drain()

        callback.assert_awaited_once_with("ROOMASYNC")

    async def test_many_keys_fire_once_and_table_empties(self, scheduler, timers):
        calls = {}

        def callback(key):
            calls[key] = calls.get(key, 0) + 1

        keys = [f"ROOM{i:03d}" for i in range(100)]
        for key in keys:
            scheduler.start(key, callback)
        assert len(scheduler) == 100

        timers.advance(60)
        await scheduler.drain()

        assert calls == {key: 1 for key in keys}
        assert len(scheduler) == 0
        assert scheduler.pending() == []


class TestCancel:
    async def test_cancel_prevents_callback(self, scheduler, timers):
        callback = MagicMock()
        scheduler.start("ROOMCANCEL", callback)

        assert scheduler.cancel("ROOMCANCEL") is True
        assert not scheduler.has("ROOMCANCEL")

        timers.advance(60)
        await scheduler.drain()
        callback.assert_not_called()

    async def test_cancel_unknown_key_returns_false(self, scheduler):
        assert scheduler.cancel("NONEXISTENT") is False

    async def test_cancel_twice_returns_true_then_false(self, scheduler):
        scheduler.start("ROOMIDEM", MagicMock())
        assert scheduler.cancel("ROOMIDEM") is True
        assert scheduler.cancel("ROOMIDEM") is False

    async def test_cancel_only_touches_given_key(self, scheduler, timers):
        a, b = MagicMock(), MagicMock()
        scheduler.start("ROOM_A", a)
        scheduler.start("ROOM_B", b)

        scheduler.cancel("ROOM_A")
        assert scheduler.has("ROOM_B")

        timers.advance(60)
        await scheduler.drain()
        a.assert_not_called()
        b.assert_called_once_with("ROOM_B")

    async def test_cancel_after_fire_returns_false(self, scheduler, timers):
        scheduler.start("ROOM", MagicMock())
        timers.advance(60)
        await scheduler.drain()
        assert scheduler.cancel("ROOM") is False

    async def test_cancel_all(self, scheduler, timers):
        callback = MagicMock()
        for key in ("A", "B", "C"):
            scheduler.start(key, callback)

        assert scheduler.cancel_all() == 3
        timers.advance(60)
        await scheduler.drain()

        callback.assert_not_called()
        assert len(scheduler) == 0


class TestCallbackErrors:
    async def test_sync_error_is_logged_not_raised(self, scheduler, timers, caplog):
        def boom(key):
            raise RuntimeError("db down")

        scheduler.start("ROOMERR", boom)
        with caplog.at_level(logging.ERROR, logger="roomhub.grace"):
            timers.advance(60)
            await scheduler.drain()

        assert "ROOMERR" in caplog.text
        assert not scheduler.has("ROOMERR")

    async def test_async_error_does_not_affect_other_timers(self, scheduler, timers):
        ok = MagicMock()
        scheduler.start("BAD", AsyncMock(side_effect=RuntimeError("db down")))
        scheduler.start("GOOD", ok)

        timers.advance(60)
        await scheduler.drain()

        ok.assert_called_once_with("GOOD")
        assert len(scheduler) == 0

    async def test_callback_can_restart_its_own_key(self, scheduler, timers):
        calls = []

        def callback(key):
            calls.append(key)
            if len(calls) == 1:
                scheduler.start(key, callback)

        scheduler.start("LOOP", callback)
        timers.advance(60)
        await scheduler.drain()
        assert scheduler.has("LOOP")

        timers.advance(60)
        await scheduler.drain()
        assert calls == ["LOOP", "LOOP"]
        assert not scheduler.has("LOOP")


class TestDuration:
    def test_default_duration_is_sixty_seconds(self):
        assert GracePeriodScheduler().duration == 60.0

    async def test_set_duration_applies_to_new_timers_only(self, scheduler, timers):
        early, late = MagicMock(), MagicMock()
        scheduler.start("EARLY", early)
        scheduler.set_duration(5)
        scheduler.start("LATE", late)

        timers.advance(5)
        await scheduler.drain()
        late.assert_called_once_with("LATE")
        early.assert_not_called()

        timers.advance(55)
        await scheduler.drain()
        early.assert_called_once_with("EARLY")

    def test_negative_duration_rejected(self, scheduler):
        with pytest.raises(ValueError):
            scheduler.set_duration(-1)


class TestEventLoopTimers:
    async def test_real_loop_timer_fires(self):
        """Without an injected timer the running loop's call_later is used."""
        scheduler = GracePeriodScheduler(duration=0.01)
        fired = asyncio.Event()
        scheduler.start("REAL", lambda key: fired.set())

        await asyncio.wait_for(fired.wait(), timeout=2)
        await scheduler.drain()
        assert not scheduler.has("REAL")

    async def test_real_loop_timer_cancel(self):
        scheduler = GracePeriodScheduler(duration=0.05)
        callback = MagicMock()
        scheduler.start("REAL", callback)
        scheduler.cancel("REAL")

        await asyncio.sleep(0.1)
        callback.assert_not_called()
