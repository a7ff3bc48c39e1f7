from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from casamatch.core.match_engine import MatchEngine
from casamatch.core.database import Client, init_db
from casamatch.core.config import settings as default_settings
from casamatch.services.notification_tracker import NotificationTracker
from typing import Awaitable, Callable, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)

# async dispatcher(client, listings) -> ids of listings actually delivered
Dispatcher = Callable[[Client, List], Awaitable[List[int]]]


async def log_dispatcher(client, listings) -> List[int]:
    """Default dispatcher: log pending matches, deliver nothing"""
    logger.info(f"[Scheduler] Pending matches for buyer, buyer_id: {client.id}, name: {client.full_name}, count: {len(listings)}")
    return []


class MatchingScheduler:
    """Periodically re-match every buyer and hand pending listings to a dispatcher"""

    def __init__(self, dispatcher: Optional[Dispatcher] = None, session_factory=None, settings=None):
        self.settings = settings or default_settings
        self.scheduler = AsyncIOScheduler()
        if session_factory is None:
            _, session_factory = init_db(self.settings.database_url)
        self.SessionLocal = session_factory
        self.dispatcher = dispatcher or log_dispatcher
        self.is_running = False

    def start(self):
        """Start the scheduler"""
        logger.info(f"[Scheduler] Scheduling buyer re-matching, interval: {self.settings.rematch_interval_minutes} minutes")
        self.scheduler.add_job(
            self.run_matching_cycle,
            trigger=IntervalTrigger(minutes=self.settings.rematch_interval_minutes),
            id='buyer_rematch',
            name='Buyer Re-matching',
            replace_existing=True
        )

        self.scheduler.start()
        self.is_running = True
        logger.info("[Scheduler] Scheduler started successfully")

    async def run_matching_cycle(self) -> Dict[str, int]:
        """
        Match every buyer and dispatch listings not yet notified.

        Returns stats: {buyers: X, dispatched: X, errors: X}
        """
        logger.info("[Scheduler] Starting matching cycle")
        stats = {'buyers': 0, 'dispatched': 0, 'errors': 0}
        db = self.SessionLocal()

        try:
            match_engine = MatchEngine(db, self.settings)
            tracker = NotificationTracker(db)
            matches_by_buyer = match_engine.match_buyers()
            buyers = db.query(Client).filter(Client.type.in_(('buyer', 'both'))).order_by(Client.id).all()

            for client in buyers:
                stats['buyers'] += 1
                try:
                    matches = matches_by_buyer.get(client.id, [])
                    pending = tracker.pending_for_buyer(client.id, matches)
                    if not pending:
                        continue

                    delivered = await self.dispatcher(client, pending)
                    pending_ids = {listing.id for listing in pending}
                    for listing_id in delivered or []:
                        if listing_id in pending_ids:
                            tracker.record_sent(client.id, listing_id)
                            stats['dispatched'] += 1
                    db.commit()
                except Exception as e:
                    db.rollback()
                    stats['errors'] += 1
                    logger.error(f"[Scheduler] Error matching buyer, buyer_id: {client.id}, error: {e}")
                    continue

            logger.info(f"[Scheduler] Matching cycle completed, stats: {stats}")
        except Exception as e:
            logger.error(f"[Scheduler] Error in matching cycle, error: {e}")
        finally:
            db.close()

        return stats

    def stop(self):
        """Stop the scheduler"""
        if not self.is_running:
            return

        logger.info("[Scheduler] Stopping matching scheduler...")
        try:
            self.scheduler.shutdown(wait=True)
        except Exception as e:
            logger.error(f"[Scheduler] Error stopping scheduler, error: {e}")
        finally:
            self.is_running = False
            logger.info("[Scheduler] Scheduler stopped")

    def get_status(self) -> dict:
        """Get scheduler status"""
        jobs = self.scheduler.get_jobs()

        return {
            'running': self.is_running,
            'jobs': [
                {
                    'id': job.id,
                    'name': job.name,
                    'next_run': job.next_run_time.isoformat() if job.next_run_time else None
                }
                for job in jobs
            ]
        }
