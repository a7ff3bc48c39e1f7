"""
Unit tests for scheduler service
"""
import pytest
from datetime import datetime
from unittest.mock import AsyncMock, Mock

from casamatch.core.database import NotificationRecord
from casamatch.services.scheduler import MatchingScheduler, log_dispatcher


@pytest.fixture
def dispatcher():
    """Dispatcher delivering every listing it receives"""
    async def deliver_all(client, listings):
        return [listing.id for listing in listings]

    return AsyncMock(side_effect=deliver_all)


@pytest.fixture
def scheduler(dispatcher, session_factory, test_settings):
    """Create scheduler instance"""
    scheduler = MatchingScheduler(dispatcher=dispatcher, session_factory=session_factory, settings=test_settings)
    yield scheduler

    # Cleanup
    if scheduler.is_running:
        scheduler.stop()


class TestMatchingScheduler:
    """Test MatchingScheduler lifecycle"""

    def test_init(self, scheduler):
        """Test scheduler initialization"""
        assert scheduler is not None
        assert scheduler.is_running is False

    def test_default_dispatcher(self, session_factory, test_settings):
        scheduler = MatchingScheduler(session_factory=session_factory, settings=test_settings)

        assert scheduler.dispatcher is log_dispatcher

    def test_start(self, scheduler):
        """Test starting the scheduler"""
        mock_scheduler = Mock()
        scheduler.scheduler = mock_scheduler

        scheduler.start()

        assert scheduler.is_running is True
        mock_scheduler.start.assert_called_once()
        kwargs = mock_scheduler.add_job.call_args.kwargs
        assert kwargs['id'] == 'buyer_rematch'
        assert kwargs['replace_existing'] is True

    def test_stop(self, scheduler):
        """Test stopping the scheduler"""
        scheduler.is_running = True
        mock_scheduler = Mock()
        scheduler.scheduler = mock_scheduler

        scheduler.stop()

        assert scheduler.is_running is False
        mock_scheduler.shutdown.assert_called_once()

    def test_stop_when_not_running(self, scheduler):
        """Test stopping when not running"""
        scheduler.is_running = False
        scheduler.stop()
        # Should not raise any errors

    def test_get_status(self, scheduler):
        """Test getting scheduler status"""
        mock_job = Mock()
        mock_job.id = 'buyer_rematch'
        mock_job.name = 'Buyer Re-matching'
        mock_job.next_run_time = datetime.utcnow()

        scheduler.scheduler.get_jobs = Mock(return_value=[mock_job])
        scheduler.is_running = True

        status = scheduler.get_status()

        assert status['running'] is True
        assert len(status['jobs']) == 1
        assert status['jobs'][0]['id'] == 'buyer_rematch'

    def test_get_status_not_running(self, scheduler):
        """Test getting status when not running"""
        scheduler.is_running = False
        scheduler.scheduler.get_jobs = Mock(return_value=[])

        status = scheduler.get_status()

        assert status['running'] is False
        assert len(status['jobs']) == 0


class TestMatchingCycle:
    """Test one batch re-matching run"""

    @pytest.mark.asyncio
    async def test_dispatches_and_records(self, scheduler, dispatcher, db_session, make_buyer, make_listing):
        buyer = make_buyer(max_price=300000)
        first = make_listing(price=250000)
        second = make_listing(price=290000)
        make_listing(price=350000)
        received = []

        async def deliver_all(client, listings):
            received.append((client.id, {l.id for l in listings}))
            return [l.id for l in listings]

        dispatcher.side_effect = deliver_all

        stats = await scheduler.run_matching_cycle()

        assert stats == {'buyers': 1, 'dispatched': 2, 'errors': 0}
        dispatcher.assert_awaited_once()
        assert received == [(buyer.id, {first.id, second.id})]
        assert db_session.query(NotificationRecord).count() == 2

    @pytest.mark.asyncio
    async def test_second_cycle_sends_nothing_new(self, scheduler, dispatcher, make_buyer, make_listing):
        make_buyer()
        make_listing()

        await scheduler.run_matching_cycle()
        stats = await scheduler.run_matching_cycle()

        assert stats['dispatched'] == 0
        assert dispatcher.await_count == 1

    @pytest.mark.asyncio
    async def test_only_delivered_listings_recorded(self, scheduler, dispatcher, db_session, make_buyer, make_listing):
        buyer = make_buyer()
        first = make_listing()
        make_listing()

        async def deliver_first(client, listings):
            return [first.id]

        dispatcher.side_effect = deliver_first

        stats = await scheduler.run_matching_cycle()

        assert stats['dispatched'] == 1
        records = db_session.query(NotificationRecord).all()
        assert [(r.buyer_id, r.listing_id) for r in records] == [(buyer.id, first.id)]

    @pytest.mark.asyncio
    async def test_failing_buyer_does_not_stop_cycle(self, scheduler, dispatcher, db_session, make_buyer, make_listing):
        giulia = make_buyer(first_name='Giulia')
        luca = make_buyer(first_name='Luca')
        listing = make_listing()

        async def flaky(client, listings):
            if client.id == giulia.id:
                raise ConnectionError("gateway down")
            return [l.id for l in listings]

        dispatcher.side_effect = flaky

        stats = await scheduler.run_matching_cycle()

        assert stats == {'buyers': 2, 'dispatched': 1, 'errors': 1}
        records = db_session.query(NotificationRecord).all()
        assert [(r.buyer_id, r.listing_id) for r in records] == [(luca.id, listing.id)]

    @pytest.mark.asyncio
    async def test_sellers_and_missing_preferences_skipped(self, scheduler, dispatcher, make_buyer, make_listing):
        make_buyer(client_type='seller')
        make_buyer(with_preference=False)
        make_listing()

        stats = await scheduler.run_matching_cycle()

        assert stats['buyers'] == 1
        assert stats['dispatched'] == 0
        dispatcher.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_log_dispatcher_delivers_nothing(self, make_buyer, make_listing):
        buyer = make_buyer()

        assert await log_dispatcher(buyer, [make_listing()]) == []
