from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError
from casamatch.core.database import Listing, AgencyVariant, UnitKey
from casamatch.core.config import Settings, settings as default_settings
from casamatch.core.exceptions import StorageConflictError
from datetime import datetime
import logging
from typing import Dict, List, Optional

from casamatch.utils.address_normalizer import is_generic_address, normalize_address, normalize_city
from casamatch.utils.criteria_matcher import normalize_property_type
from casamatch.utils.duplicate_detector import Deduplicator
from casamatch.utils.listing_classifier import ClassificationResult, ListingClassifier
from casamatch.utils.phone_normalizer import normalize_italian_phone
from casamatch.utils.portal_adapters import RawListingPayload, adapt_payload

logger = logging.getLogger(__name__)


class ListingProcessor:
    """Classify, deduplicate and store imported listings"""

    def __init__(self, db_session: Session, settings: Settings = None):
        self.db = db_session
        self.settings = settings or default_settings
        self.deduplicator = Deduplicator(db_session, self.settings)
        self.classifier = ListingClassifier(self.settings)

    def process_listings(self, payloads: List[Dict]) -> Dict[str, int]:
        """
        Process a batch of raw payloads.
        Returns stats: {new: X, merged: X, updated: X, manual_review: X, errors: X}
        """
        logger.info(f"[Listing Processor] Starting batch processing, count: {len(payloads)}")

        stats = {
            'new': 0,
            'merged': 0,
            'updated': 0,
            'manual_review': 0,
            'errors': 0
        }

        for idx, payload in enumerate(payloads, 1):
            try:
                with self.db.begin_nested():
                    result = self.process_single_listing(payload)
                stats[result] += 1
                logger.debug(f"[Listing Processor] Listing processed, result: {result}, index: {idx}")
            except Exception as e:
                logger.error(f"[Listing Processor] Error processing listing, index: {idx}, error: {e}")
                stats['errors'] += 1
                continue

        self.db.commit()
        logger.info(f"[Listing Processor] Batch processing completed, stats: {stats}")
        return stats

    def process_single_listing(self, payload: Dict) -> str:
        """
        Process a single raw payload.
        Returns: 'new', 'merged', 'updated' or 'manual_review'

        A concurrent writer creating a canonical at the same address first
        surfaces as StorageConflictError; the canonical is then re-fetched
        and merged.
        """
        raw = payload if isinstance(payload, RawListingPayload) else adapt_payload(payload)

        last_error = None
        for attempt in range(1, self.settings.ingest_max_retries + 1):
            unit_key = self._claim_unit_key(raw)
            canonical = self.deduplicator.find_canonical(raw)
            result = self.classifier.classify(raw, canonical)

            try:
                if canonical is not None:
                    return self._merge_into_canonical(canonical, raw, result)
                return self._create_canonical(raw, result, unit_key)
            except StorageConflictError as e:
                last_error = e
                logger.warning(f"[Listing Processor] Storage conflict, re-fetching canonical, attempt: {attempt}, address: {raw.address}, error: {e}")
                if canonical is not None:
                    self.db.expire(canonical)

        raise last_error

    def _claim_unit_key(self, raw: RawListingPayload) -> Optional[UnitKey]:
        """Load (or insert) the unit key of raw's address, with a fresh version"""
        if is_generic_address(raw.address):
            return None

        address = normalize_address(raw.address, raw.city)
        city_key = normalize_city(raw.city)
        query = self.db.query(UnitKey).populate_existing().filter(
            UnitKey.normalized_address == address,
            UnitKey.city_key == city_key
        )

        unit_key = query.first()
        if unit_key is not None:
            return unit_key

        try:
            with self.db.begin_nested():
                unit_key = UnitKey(normalized_address=address, city_key=city_key)
                self.db.add(unit_key)
                self.db.flush()
            return unit_key
        except IntegrityError:
            logger.debug(f"[Listing Processor] Unit key inserted concurrently, address: {address}, city: {city_key}")
            return query.one()

    def _create_canonical(self, raw: RawListingPayload, result: ClassificationResult,
                          unit_key: Optional[UnitKey] = None) -> str:
        """Create a new canonical listing"""
        logger.info(f"[Listing Processor] Creating new canonical listing, address: {raw.address}, city: {raw.city}, classification: {result.classification}")

        now = datetime.utcnow()
        generic = is_generic_address(raw.address)

        listing = Listing(
            address=raw.address,
            city=raw.city,
            normalized_address=None if generic else normalize_address(raw.address, raw.city),
            city_key=normalize_city(raw.city),
            latitude=raw.latitude,
            longitude=raw.longitude,
            price=raw.price,
            size=raw.size,
            bedrooms=raw.bedrooms,
            bathrooms=raw.bathrooms,
            floor=raw.floor,
            property_type=normalize_property_type(raw.property_type) or None,
            description=raw.description,
            status='available',
            source=raw.portal_source,
            url=raw.url,
            created_at=now,
            updated_at=now,
            last_seen=now
        )
        self._apply_owner(listing, raw)
        self._apply_classification(listing, result)

        try:
            with self.db.begin_nested():
                self.db.add(listing)
                if unit_key is not None:
                    # Version check fails if another writer created here since the lookup
                    unit_key.updated_at = now
                    flag_modified(unit_key, 'updated_at')
                self.db.flush()
        except (IntegrityError, StaleDataError) as e:
            raise StorageConflictError(f"Canonical listing created concurrently for '{raw.address}', {raw.city}") from e

        if result.requires_manual_input:
            logger.info(f"[Listing Processor] Listing stored for manual review, id: {listing.id}, address: {raw.address}")
            return 'manual_review'
        return 'new'

    def _merge_into_canonical(self, listing: Listing, raw: RawListingPayload, result: ClassificationResult) -> str:
        """Merge raw into an existing canonical listing"""
        logger.debug(f"[Listing Processor] Merging into canonical listing, id: {listing.id}, address: {listing.address}")

        variants_before = len(listing.agency_variants)

        try:
            with self.db.begin_nested():
                listing.last_seen = datetime.utcnow()

                # Fill gaps only; the canonical keeps its own figures
                if listing.location is None and raw.location is not None:
                    listing.location = raw.location
                for attr in ('bedrooms', 'bathrooms', 'floor', 'description', 'url'):
                    if getattr(listing, attr) is None and getattr(raw, attr) is not None:
                        setattr(listing, attr, getattr(raw, attr))
                if not listing.property_type and raw.property_type:
                    listing.property_type = normalize_property_type(raw.property_type)

                if listing.owner_type != 'private':
                    self._apply_owner(listing, raw)
                self._apply_classification(listing, result)
                self.db.flush()
        except IntegrityError as e:
            raise StorageConflictError(f"Agency variant written concurrently for listing {listing.id}") from e

        if len(listing.agency_variants) > variants_before:
            logger.info(f"[Listing Processor] Merged new agency variant, id: {listing.id}, classification: {listing.classification}, variants: {len(listing.agency_variants)}")
            return 'merged'
        return 'updated'

    def _apply_owner(self, listing: Listing, raw: RawListingPayload):
        owner_name = raw.owner_name
        if not owner_name and raw.agency_name and self.classifier.is_private_seller_name(raw.agency_name):
            owner_name = raw.agency_name
        if owner_name:
            listing.owner_name = owner_name
        if raw.owner_phone:
            listing.owner_phone = normalize_italian_phone(raw.owner_phone) or raw.owner_phone

    def _apply_classification(self, listing: Listing, result: ClassificationResult):
        """Write classification result and sync agency variants (keyed by agency + portal)"""
        listing.requires_manual_input = result.requires_manual_input
        if result.requires_manual_input:
            listing.classification = None
            return

        listing.classification = result.classification
        listing.owner_type = result.owner_type
        listing.is_also_from_agency = result.is_also_from_agency
        listing.exclusivity_hint = result.exclusivity_hint

        current = {(v.agency_key, v.portal_source): v for v in listing.agency_variants}
        for data in result.agency_variants:
            variant = current.get(data.identity)
            if variant is None:
                listing.agency_variants.append(AgencyVariant(
                    agency_name=data.agency_name,
                    agency_key=data.agency_key,
                    agency_phone=data.agency_phone,
                    portal_source=data.portal_source,
                    external_id=data.external_id,
                    url=data.url
                ))
            else:
                variant.agency_name = data.agency_name
                variant.agency_phone = data.agency_phone
                variant.external_id = data.external_id
                variant.url = data.url
