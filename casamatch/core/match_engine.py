"""Per-buyer matching of canonical listings"""

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from casamatch.core.config import Settings, settings as default_settings
from casamatch.core.database import BuyerPreference, Client, Listing
from casamatch.core.exceptions import PreferenceAbsentError
from casamatch.utils.criteria_matcher import CriteriaMatcher

logger = logging.getLogger(__name__)

ORDERINGS = ('newest', 'price_asc', 'price_desc', 'most_matching_buyers', 'best_match')


@dataclass(frozen=True)
class ListingSnapshot:
    """Matching-relevant fields of a listing, detached from the session"""

    id: Optional[int]
    status: Optional[str]
    price: Optional[float]
    size: Optional[float]
    bedrooms: Optional[int]
    property_type: Optional[str]
    location: Optional[dict]

    @classmethod
    def from_listing(cls, listing) -> 'ListingSnapshot':
        return cls(
            id=listing.id,
            status=listing.status,
            price=listing.price,
            size=listing.size,
            bedrooms=listing.bedrooms,
            property_type=listing.property_type,
            location=listing.location,
        )


@dataclass(frozen=True)
class PreferenceSnapshot:
    """Buyer preference fields, detached from the session"""

    buyer_id: int
    min_price: Optional[int]
    max_price: Optional[int]
    min_size: Optional[int]
    max_size: Optional[int]
    min_rooms: Optional[int]
    property_type: Optional[str]
    search_area: Optional[dict]

    @classmethod
    def from_preference(cls, pref) -> 'PreferenceSnapshot':
        return cls(
            buyer_id=pref.buyer_id,
            min_price=pref.min_price,
            max_price=pref.max_price,
            min_size=pref.min_size,
            max_size=pref.max_size,
            min_rooms=pref.min_rooms,
            property_type=pref.property_type,
            search_area=pref.search_area,
        )


class MatchEngine:
    """
    Run CriteriaMatcher over a listing pool on behalf of buyers.

    Matching itself never writes to the database: repeated calls with the
    same inputs return the same listings in the same order.
    """

    def __init__(self, db_session: Session, settings: Settings = None, matcher: CriteriaMatcher = None):
        self.db = db_session
        self.settings = settings or default_settings
        self.matcher = matcher or CriteriaMatcher(self.settings)

    def get_preference(self, buyer_id: int) -> BuyerPreference:
        """
        Load the preference of a buyer.

        Raises:
            PreferenceAbsentError: client is unknown, not a buyer, or has no preference
        """
        client = self.db.query(Client).filter(Client.id == buyer_id).first()
        if client is None or not client.is_buyer:
            raise PreferenceAbsentError(f"Client {buyer_id} is not a buyer")
        if client.preference is None:
            raise PreferenceAbsentError(f"Buyer {buyer_id} has no stored preference")
        return client.preference

    def load_listing_pool(self) -> List[Listing]:
        """Listings eligible for automated matching (manual-review listings excluded)"""
        return self.db.query(Listing).filter(
            or_(Listing.requires_manual_input.is_(None), Listing.requires_manual_input.is_(False))
        ).all()

    def load_buyer_preferences(self) -> List[BuyerPreference]:
        """Preferences of every client of type buyer or both"""
        return self.db.query(BuyerPreference).join(Client).filter(
            Client.type.in_(('buyer', 'both'))
        ).order_by(BuyerPreference.client_id).all()

    def find_matches(self, buyer_id: int, listing_pool: Optional[Iterable[Listing]] = None,
                     order_by: str = 'newest') -> List[Listing]:
        """
        Find the listings satisfying a buyer's preference.

        Args:
            buyer_id: Client id of the buyer
            listing_pool: Listings to filter; the default pool is loaded when None
            order_by: One of ORDERINGS

        Returns:
            Ordered list of matching listings, empty when the buyer has no preference

        Raises:
            ValueError: unknown order_by
        """
        if order_by not in ORDERINGS:
            raise ValueError(f"Unknown ordering '{order_by}', expected one of {', '.join(ORDERINGS)}")

        try:
            pref = self.get_preference(buyer_id)
        except PreferenceAbsentError as e:
            logger.info(f"[Match Engine] No matches computed, reason: {e}")
            return []

        pool = list(listing_pool) if listing_pool is not None else self.load_listing_pool()
        matched = [listing for listing in pool if self.matcher.matches(listing, pref)]

        logger.debug(f"[Match Engine] Matches found, buyer_id: {buyer_id}, pool: {len(pool)}, matched: {len(matched)}, order_by: {order_by}")
        return self.order_listings(matched, order_by, pref)

    def order_listings(self, listings: List[Listing], order_by: str, pref=None) -> List[Listing]:
        """Stable post-filter sort of matched listings"""
        if order_by == 'newest':
            return sorted(listings, key=lambda l: l.created_at or datetime.min, reverse=True)

        if order_by == 'price_asc':
            return sorted(listings, key=lambda l: (l.price is None, l.price or 0))

        if order_by == 'price_desc':
            # Unknown prices go last
            return sorted(listings, key=lambda l: (l.price is not None, l.price or 0), reverse=True)

        if order_by == 'most_matching_buyers':
            counts = self.count_matching_buyers(listings)
            return sorted(listings, key=lambda l: counts.get(l.id, 0), reverse=True)

        if order_by == 'best_match':
            if pref is None:
                return list(listings)
            return sorted(listings, key=lambda l: self.match_percentage(l, pref), reverse=True)

        raise ValueError(f"Unknown ordering '{order_by}'")

    def count_matching_buyers(self, listings: Iterable[Listing]) -> Dict[int, int]:
        """Number of buyers whose preference each listing satisfies, keyed by listing id"""
        prefs = [PreferenceSnapshot.from_preference(p) for p in self.load_buyer_preferences()]
        return {
            listing.id: sum(1 for pref in prefs if self.matcher.matches(listing, pref))
            for listing in listings
        }

    def match_percentage(self, listing, pref) -> int:
        """
        Score (0-100) of how well a matching listing fits a preference.

        Listings that fail the criteria score 0. Otherwise starts from 100 and
        subtracts up to 30 points when size exceeds 1.5x min_size, up to 40
        points when price is above max_price (reachable only with a price
        tolerance) and up to 15 points when price is below 80% of max_price.
        """
        if not self.matcher.matches(listing, pref):
            return 0

        score = 100.0

        if pref.min_size and listing.size and listing.size > pref.min_size * 1.5:
            size_difference = (listing.size - pref.min_size) / pref.min_size
            score -= min(30.0, size_difference * 30)

        if pref.max_price and listing.price is not None:
            price_ratio = listing.price / pref.max_price
            if price_ratio > 1:
                score -= min(40.0, (price_ratio - 1) * 400)
            elif price_ratio < 0.8:
                score -= min(15.0, (0.8 - price_ratio) * 75)

        return int(max(0, min(100, math.floor(score + 0.5))))

    def rematch_listing(self, listing: Listing, preferences: Optional[Iterable[BuyerPreference]] = None) -> List[int]:
        """
        Evaluate one listing against every buyer preference in parallel.

        Inputs are snapshotted before fan-out so worker threads never touch
        the session. A failure while evaluating one buyer is logged and
        skipped.

        Returns:
            Buyer ids whose preference the listing satisfies, in buyer id order
        """
        prefs = list(preferences) if preferences is not None else self.load_buyer_preferences()
        snapshots = [PreferenceSnapshot.from_preference(p) for p in prefs]
        target = ListingSnapshot.from_listing(listing)

        logger.info(f"[Match Engine] Re-matching listing, id: {target.id}, buyers: {len(snapshots)}")

        matched = []
        with ThreadPoolExecutor(max_workers=self.settings.rematch_max_workers) as executor:
            futures = [(pref.buyer_id, executor.submit(self.matcher.matches, target, pref)) for pref in snapshots]
            for buyer_id, future in futures:
                try:
                    if future.result():
                        matched.append(buyer_id)
                except Exception as e:
                    logger.error(f"[Match Engine] Error matching buyer, buyer_id: {buyer_id}, listing_id: {target.id}, error: {e}")

        logger.info(f"[Match Engine] Re-match completed, listing_id: {target.id}, matched_buyers: {len(matched)}")
        return matched

    def match_buyers(self, listing_pool: Optional[Iterable[Listing]] = None,
                     preferences: Optional[Iterable[BuyerPreference]] = None) -> Dict[int, List[Listing]]:
        """
        Compute the match set of many buyers in parallel.

        Listings and preferences are snapshotted before fan-out, one task per
        buyer. A buyer whose evaluation fails is logged and left out.

        Returns:
            Matched listings per buyer id, newest first
        """
        pool = list(listing_pool) if listing_pool is not None else self.load_listing_pool()
        pool = self.order_listings(pool, 'newest')
        prefs = list(preferences) if preferences is not None else self.load_buyer_preferences()

        listing_snapshots = [ListingSnapshot.from_listing(l) for l in pool]
        pref_snapshots = [PreferenceSnapshot.from_preference(p) for p in prefs]

        def evaluate(pref):
            return [i for i, snapshot in enumerate(listing_snapshots) if self.matcher.matches(snapshot, pref)]

        results = {}
        with ThreadPoolExecutor(max_workers=self.settings.rematch_max_workers) as executor:
            futures = [(pref.buyer_id, executor.submit(evaluate, pref)) for pref in pref_snapshots]
            for buyer_id, future in futures:
                try:
                    results[buyer_id] = [pool[i] for i in future.result()]
                except Exception as e:
                    logger.error(f"[Match Engine] Error matching buyer, buyer_id: {buyer_id}, error: {e}")

        logger.info(f"[Match Engine] Batch match completed, buyers: {len(pref_snapshots)}, pool: {len(pool)}")
        return results

    def find_buyers_for_listing(self, listing: Listing) -> List[Client]:
        """Buyers whose preference the listing satisfies"""
        buyer_ids = self.rematch_listing(listing)
        if not buyer_ids:
            return []
        clients = self.db.query(Client).filter(Client.id.in_(buyer_ids)).all()
        by_id = {c.id: c for c in clients}
        return [by_id[buyer_id] for buyer_id in buyer_ids if buyer_id in by_id]
