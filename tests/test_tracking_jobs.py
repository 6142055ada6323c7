"""
Tests for the background tracking sync.
"""
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock

import pytest

from fulfillment.core.database import get_db_session
from fulfillment.core.exceptions import CarrierTimeoutError
from fulfillment.services import tracking_jobs
from fulfillment.services.tracking_jobs import FAILURE_ALERT_THRESHOLD, TrackingSyncRunner
from tests.conftest import scalars_result


class FakeOrchestrator:
    refreshed = []
    failing = set()

    def __init__(self, db, client=None, track_client=None):
        self.db = db

    async def refresh_tracking(self, order_id):
        if order_id in self.failing:
            raise CarrierTimeoutError("FedEx request timed out")
        self.refreshed.append(order_id)


@pytest.fixture
def session_factory(mock_db):
    sessions = []

    @asynccontextmanager
    async def factory():
        sessions.append(mock_db)
        yield mock_db

    factory.sessions = sessions
    return factory


@pytest.fixture(autouse=True)
def fake_orchestrator(monkeypatch):
    FakeOrchestrator.refreshed = []
    FakeOrchestrator.failing = set()
    monkeypatch.setattr(tracking_jobs, "ShipmentOrchestrator", FakeOrchestrator)
    return FakeOrchestrator


class TestRunOnce:

    @pytest.mark.asyncio
    async def test_nothing_stale(self, session_factory, mock_db):
        mock_db.execute.return_value = scalars_result([])

        result = await TrackingSyncRunner(session_factory).run_once()

        assert result == {"updated": 0, "failed": 0}
        assert len(session_factory.sessions) == 1

    @pytest.mark.asyncio
    async def test_each_order_gets_its_own_session(self, session_factory, mock_db, fake_orchestrator):
        mock_db.execute.return_value = scalars_result([3, 5, 8])

        result = await TrackingSyncRunner(session_factory).run_once()

        assert result == {"updated": 3, "failed": 0}
        assert sorted(fake_orchestrator.refreshed) == [3, 5, 8]
        # One for the query, one per order
        assert len(session_factory.sessions) == 4

    @pytest.mark.asyncio
    async def test_failure_does_not_abort_batch(self, session_factory, mock_db, fake_orchestrator):
        mock_db.execute.return_value = scalars_result([3, 5, 8])
        fake_orchestrator.failing = {5}

        runner = TrackingSyncRunner(session_factory)
        result = await runner.run_once()

        assert result == {"updated": 2, "failed": 1}
        assert sorted(fake_orchestrator.refreshed) == [3, 8]
        assert runner._consecutive_failures == {5: 1}

    @pytest.mark.asyncio
    async def test_consecutive_failures_counted_and_reset(self, session_factory, mock_db, fake_orchestrator):
        mock_db.execute.return_value = scalars_result([5])
        fake_orchestrator.failing = {5}
        runner = TrackingSyncRunner(session_factory)

        for _ in range(FAILURE_ALERT_THRESHOLD):
            await runner.run_once()
        assert runner._consecutive_failures[5] == FAILURE_ALERT_THRESHOLD

        fake_orchestrator.failing = set()
        await runner.run_once()
        assert 5 not in runner._consecutive_failures


class TestLifecycle:

    def test_default_session_factory(self):
        assert TrackingSyncRunner()._session_factory is get_db_session

    @pytest.mark.asyncio
    async def test_start_and_stop(self, session_factory, monkeypatch):
        runner = TrackingSyncRunner(session_factory)
        monkeypatch.setattr(runner, "run_once", AsyncMock(return_value={"updated": 0, "failed": 0}))

        await runner.start()
        await runner.start()
        assert len(runner._tasks) == 1

        await runner.stop()
        assert runner._tasks == []
        assert runner._running is False
