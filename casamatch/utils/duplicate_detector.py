"""Duplicate detection for listings advertised by several agencies/portals"""

import logging
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session
from fuzzywuzzy import fuzz

from casamatch.core.config import Settings, settings as default_settings
from casamatch.core.database import AgencyVariant, DedupConflict, Listing
from casamatch.core.exceptions import AmbiguousDuplicateError
from casamatch.utils.address_normalizer import is_generic_address, normalize_address, normalize_city
from casamatch.utils.portal_adapters import PORTAL_NAMES, RawListingPayload

logger = logging.getLogger(__name__)


class Deduplicator:
    """
    Find the canonical listing an incoming raw listing duplicates.

    Uses two strategies:
    1. Portal + external ID (same advertisement scraped again)
    2. Same physical unit: same city, same normalized address,
       price within ±dedup_price_tolerance_percent and
       size within ±dedup_size_tolerance_sqm
    """

    def __init__(self, db_session: Session, settings: Settings = None):
        """
        Initialize deduplicator.

        Args:
            db_session: SQLAlchemy database session
            settings: Application settings with dedup tolerances
        """
        self.db = db_session
        self.settings = settings or default_settings

    def find_by_external_id(self, portal_source: str, external_id: Optional[str]) -> Optional[Listing]:
        """
        Find canonical listing by portal and external ID.

        Args:
            portal_source: Source of the raw listing (e.g. 'scraper-idealista')
            external_id: Listing ID on the portal

        Returns:
            Matching Listing or None
        """
        if not external_id:
            return None

        portal = PORTAL_NAMES.get(portal_source, portal_source)
        variant = self.db.query(AgencyVariant).filter(
            AgencyVariant.portal_source == portal,
            AgencyVariant.external_id == external_id
        ).first()
        return variant.listing if variant else None

    def addresses_match(self, address_a: str, address_b: str) -> bool:
        """
        Compare two normalized addresses.

        Exact equality always matches; below 100, ``dedup_address_similarity``
        also accepts a fuzzywuzzy ratio at or above the threshold.
        """
        if not address_a or not address_b:
            return False
        if address_a == address_b:
            return True
        threshold = self.settings.dedup_address_similarity
        if threshold >= 100:
            return False
        return fuzz.ratio(address_a, address_b) >= threshold

    def is_same_unit(self, raw: RawListingPayload, listing: Listing) -> bool:
        """
        Check whether raw and listing describe the same physical unit.

        Generic addresses (no house number, bare city name) never match.
        """
        if is_generic_address(raw.address) or is_generic_address(listing.address):
            return False

        if normalize_city(raw.city) != (listing.city_key or normalize_city(listing.city)):
            return False

        raw_address = normalize_address(raw.address, raw.city)
        listing_address = listing.normalized_address or normalize_address(listing.address, listing.city)
        if not self.addresses_match(raw_address, listing_address):
            return False

        if raw.price is None or listing.price is None:
            return False
        # Band on the lower of the two prices keeps the relation symmetric
        tolerance = min(raw.price, listing.price) * self.settings.dedup_price_tolerance_percent / 100
        if abs(raw.price - listing.price) > tolerance:
            return False

        if raw.size is None or listing.size is None:
            return False
        if abs(raw.size - listing.size) > self.settings.dedup_size_tolerance_sqm:
            return False

        return True

    def candidate_pool(self, raw: RawListingPayload) -> List[Listing]:
        """Load canonical listings of the same city (and same address unless fuzzy matching is on)"""
        query = self.db.query(Listing).filter(Listing.city_key == normalize_city(raw.city))
        if self.settings.dedup_address_similarity >= 100:
            query = query.filter(Listing.normalized_address == normalize_address(raw.address, raw.city))
        return query.all()

    def find_canonical(self, raw: RawListingPayload, candidate_pool: Optional[Iterable[Listing]] = None) -> Optional[Listing]:
        """
        Find the canonical listing for raw.

        Args:
            raw: Adapted raw listing
            candidate_pool: Listings to search; loaded from the database when None

        Returns:
            Canonical Listing or None when raw is a new unit. When several
            canonicals match, the most recently created one is returned and
            the conflict is recorded.
        """
        if candidate_pool is None:
            listing = self.find_by_external_id(raw.portal_source, raw.external_id)
            if listing is not None:
                logger.debug(f"[Deduplicator] Found canonical via external_id, id: {listing.id}, external_id: {raw.external_id}")
                return listing
            candidate_pool = self.candidate_pool(raw)

        matches = [listing for listing in candidate_pool if self.is_same_unit(raw, listing)]

        if not matches:
            return None
        if len(matches) == 1:
            logger.debug(f"[Deduplicator] Found canonical via unit match, id: {matches[0].id}")
            return matches[0]

        return self._resolve_ambiguous(raw, matches)

    def _resolve_ambiguous(self, raw: RawListingPayload, matches: List[Listing]) -> Listing:
        """Pick the most recently created canonical and record the conflict"""
        chosen = max(matches, key=lambda l: (l.created_at is not None, l.created_at, l.id or 0))
        conflict = AmbiguousDuplicateError([m.id for m in matches], chosen.id)
        logger.warning(f"[Deduplicator] {conflict}, address: {raw.address}, city: {raw.city}")

        record = DedupConflict(
            chosen_listing_id=chosen.id,
            raw_address=raw.address,
            city=raw.city
        )
        record.set_candidate_ids(conflict.candidate_ids)
        self.db.add(record)
        return chosen
