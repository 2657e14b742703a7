"""Tests for the document store adapter."""

import asyncio
import threading

import pytest

from services.shared.models import utcnow


class TestExecutor:
    """Session work happens on the store's worker thread."""

    @pytest.mark.asyncio
    async def test_sessions_open_off_the_event_loop(self, store):
        threads = []
        factory = store.session_factory

        def recording_factory():
            threads.append(threading.get_ident())
            return factory()

        store.session_factory = recording_factory
        await store.list_seeds()

        assert threads
        assert threading.get_ident() not in threads

    @pytest.mark.asyncio
    async def test_loop_stays_responsive_during_store_work(self, store):
        release = threading.Event()
        factory = store.session_factory

        def slow_factory():
            release.wait(timeout=5)
            return factory()

        store.session_factory = slow_factory
        pending = asyncio.ensure_future(store.list_seeds())
        await asyncio.sleep(0.01)

        assert not pending.done()
        release.set()
        assert await pending == []


class TestMarkers:
    @pytest.mark.asyncio
    async def test_compare_and_set_requires_expected_value(self, markers):
        now = utcnow()
        assert await markers.compare_and_set_marker('sync', None, now) is True
        assert await markers.compare_and_set_marker('sync', None, now) is False
        assert await markers.get_marker('sync') == now
