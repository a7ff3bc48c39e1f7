"""Tracks which (buyer, listing) pairs have already been sent"""

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Set

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from casamatch.core.database import NotificationRecord

logger = logging.getLogger(__name__)


class NotificationTracker:
    """
    Record and query sent notifications.

    A (buyer, listing) pair has at most one NotificationRecord; sending again
    updates it (latest timestamp kept, send_count incremented).
    """

    def __init__(self, db_session: Session):
        self.db = db_session

    def get_notified_listing_ids(self, buyer_id: int) -> Set[int]:
        """Ids of listings already sent to a buyer"""
        rows = self.db.query(NotificationRecord.listing_id).filter(
            NotificationRecord.buyer_id == buyer_id
        ).all()
        return {row[0] for row in rows}

    def is_notified(self, buyer_id: int, listing_id: int) -> bool:
        return self._get_record(buyer_id, listing_id) is not None

    def pending_for_buyer(self, buyer_id: int, matched_listings: Iterable, resend: bool = False) -> List:
        """
        Filter matched listings down to those not yet sent to the buyer.

        Args:
            buyer_id: Client id of the buyer
            matched_listings: Output of MatchEngine.find_matches
            resend: Return every matched listing, including already sent ones

        Returns:
            Listings in their original order
        """
        matched = list(matched_listings)
        if resend:
            return matched

        notified = self.get_notified_listing_ids(buyer_id)
        pending = [listing for listing in matched if listing.id not in notified]
        logger.debug(f"[Notification Tracker] Pending listings computed, buyer_id: {buyer_id}, matched: {len(matched)}, pending: {len(pending)}")
        return pending

    def record_sent(self, buyer_id: int, listing_id: int, timestamp: Optional[datetime] = None) -> NotificationRecord:
        """
        Upsert the notification record of a (buyer, listing) pair.

        The insert runs in a SAVEPOINT; if a concurrent writer inserted the
        pair first, the unique constraint fires and the existing record is
        updated instead. The caller owns the commit.

        Timestamps are stored as naive UTC; an aware timestamp is converted.
        """
        timestamp = timestamp or datetime.utcnow()
        if timestamp.tzinfo is not None:
            timestamp = timestamp.astimezone(timezone.utc).replace(tzinfo=None)

        record = self._get_record(buyer_id, listing_id)
        if record is None:
            try:
                with self.db.begin_nested():
                    record = NotificationRecord(buyer_id=buyer_id, listing_id=listing_id, notified_at=timestamp, send_count=1)
                    self.db.add(record)
                    self.db.flush()
                logger.info(f"[Notification Tracker] Notification recorded, buyer_id: {buyer_id}, listing_id: {listing_id}")
                return record
            except IntegrityError:
                logger.debug(f"[Notification Tracker] Concurrent insert detected, updating, buyer_id: {buyer_id}, listing_id: {listing_id}")
                record = self._get_record(buyer_id, listing_id)
                if record is None:
                    raise

        if record.notified_at is None or timestamp > record.notified_at:
            record.notified_at = timestamp
        record.send_count = (record.send_count or 0) + 1
        self.db.flush()

        logger.info(f"[Notification Tracker] Notification re-sent, buyer_id: {buyer_id}, listing_id: {listing_id}, send_count: {record.send_count}")
        return record

    def _get_record(self, buyer_id: int, listing_id: int) -> Optional[NotificationRecord]:
        return self.db.query(NotificationRecord).filter(
            NotificationRecord.buyer_id == buyer_id,
            NotificationRecord.listing_id == listing_id
        ).first()
