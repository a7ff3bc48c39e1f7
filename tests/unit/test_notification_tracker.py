"""
Unit tests for NotificationTracker.
"""
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch
from casamatch.core.database import NotificationRecord
from casamatch.services.notification_tracker import NotificationTracker


@pytest.fixture
def tracker(db_session):
    return NotificationTracker(db_session)


class TestRecordSent:
    """Test upsert of (buyer, listing) records"""

    def test_first_send_creates_record(self, db_session, tracker, make_buyer, make_listing):
        buyer = make_buyer()
        listing = make_listing()
        sent_at = datetime(2024, 6, 1, 10, 0)

        record = tracker.record_sent(buyer.id, listing.id, sent_at)
        db_session.commit()

        assert record.send_count == 1
        assert record.notified_at == sent_at
        assert tracker.is_notified(buyer.id, listing.id)

    def test_second_send_updates_single_record(self, db_session, tracker, make_buyer, make_listing):
        buyer = make_buyer()
        listing = make_listing()

        tracker.record_sent(buyer.id, listing.id, datetime(2024, 6, 1, 10, 0))
        tracker.record_sent(buyer.id, listing.id, datetime(2024, 6, 2, 9, 30))
        db_session.commit()

        records = db_session.query(NotificationRecord).all()
        assert len(records) == 1
        assert records[0].send_count == 2
        assert records[0].notified_at == datetime(2024, 6, 2, 9, 30)

    def test_aware_timestamp_stored_as_naive_utc(self, db_session, tracker, make_buyer, make_listing):
        buyer = make_buyer()
        listing = make_listing()
        rome = timezone(timedelta(hours=2))

        tracker.record_sent(buyer.id, listing.id, datetime(2024, 6, 1, 10, 0))
        record = tracker.record_sent(buyer.id, listing.id, datetime(2024, 6, 1, 13, 0, tzinfo=rome))
        db_session.commit()

        assert record.send_count == 2
        assert record.notified_at == datetime(2024, 6, 1, 11, 0)
        assert record.notified_at.tzinfo is None

    def test_aware_first_send(self, db_session, tracker, make_buyer, make_listing):
        buyer = make_buyer()
        listing = make_listing()

        record = tracker.record_sent(buyer.id, listing.id, datetime(2024, 6, 1, 10, 0, tzinfo=timezone.utc))

        assert record.notified_at == datetime(2024, 6, 1, 10, 0)

    def test_older_timestamp_does_not_regress(self, db_session, tracker, make_buyer, make_listing):
        buyer = make_buyer()
        listing = make_listing()

        tracker.record_sent(buyer.id, listing.id, datetime(2024, 6, 2))
        record = tracker.record_sent(buyer.id, listing.id, datetime(2024, 6, 1))

        assert record.notified_at == datetime(2024, 6, 2)
        assert record.send_count == 2

    def test_default_timestamp(self, tracker, make_buyer, make_listing):
        buyer = make_buyer()
        listing = make_listing()

        record = tracker.record_sent(buyer.id, listing.id)

        assert record.notified_at is not None

    def test_concurrent_insert_falls_back_to_update(self, db_session, tracker, make_buyer, make_listing):
        """Test a record inserted by another writer after our lookup is updated, not duplicated"""
        buyer = make_buyer()
        listing = make_listing()
        db_session.add(NotificationRecord(buyer_id=buyer.id, listing_id=listing.id,
                                          notified_at=datetime(2024, 6, 1), send_count=1))
        db_session.commit()

        real_get = tracker._get_record
        calls = {'n': 0}

        def stale_then_real(buyer_id, listing_id):
            calls['n'] += 1
            if calls['n'] == 1:
                return None
            return real_get(buyer_id, listing_id)

        with patch.object(tracker, '_get_record', side_effect=stale_then_real):
            record = tracker.record_sent(buyer.id, listing.id, datetime(2024, 6, 3))
        db_session.commit()

        assert db_session.query(NotificationRecord).count() == 1
        assert record.send_count == 2
        assert record.notified_at == datetime(2024, 6, 3)


class TestPending:
    """Test filtering matched listings to unsent ones"""

    def test_excludes_notified(self, tracker, make_buyer, make_listing):
        buyer = make_buyer()
        listings = [make_listing() for _ in range(3)]
        tracker.record_sent(buyer.id, listings[1].id)

        pending = tracker.pending_for_buyer(buyer.id, listings)

        assert [l.id for l in pending] == [listings[0].id, listings[2].id]

    def test_other_buyer_unaffected(self, tracker, make_buyer, make_listing):
        giulia = make_buyer(first_name='Giulia')
        luca = make_buyer(first_name='Luca')
        listing = make_listing()
        tracker.record_sent(giulia.id, listing.id)

        assert tracker.pending_for_buyer(luca.id, [listing]) == [listing]
        assert tracker.get_notified_listing_ids(giulia.id) == {listing.id}
        assert tracker.get_notified_listing_ids(luca.id) == set()

    def test_resend_returns_everything(self, tracker, make_buyer, make_listing):
        buyer = make_buyer()
        listings = [make_listing() for _ in range(2)]
        tracker.record_sent(buyer.id, listings[0].id)

        assert tracker.pending_for_buyer(buyer.id, listings, resend=True) == listings
