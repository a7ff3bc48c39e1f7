"""Private / single-agency / multi-agency classification of imported listings"""

import logging
from dataclasses import dataclass, field, replace
from typing import List, Optional

from casamatch.core.config import Settings, settings as default_settings
from casamatch.core.exceptions import MissingClassificationInputError
from casamatch.utils.address_normalizer import normalize_agency_name
from casamatch.utils.phone_normalizer import normalize_italian_phone
from casamatch.utils.portal_adapters import PORTAL_NAMES, RawListingPayload

logger = logging.getLogger(__name__)

PRIVATE = 'private'
SINGLE_AGENCY = 'single-agency'
MULTI_AGENCY = 'multi-agency'


@dataclass(frozen=True)
class AgencyVariantData:
    """One agency's advertisement of a canonical listing"""

    agency_name: str
    agency_key: str
    portal_source: str
    agency_phone: Optional[str] = None
    external_id: Optional[str] = None
    url: Optional[str] = None

    @property
    def identity(self):
        return self.agency_key, self.portal_source

    @classmethod
    def from_model(cls, variant) -> 'AgencyVariantData':
        return cls(
            agency_name=variant.agency_name,
            agency_key=variant.agency_key,
            portal_source=variant.portal_source,
            agency_phone=variant.agency_phone,
            external_id=variant.external_id,
            url=variant.url,
        )


@dataclass
class ClassificationResult:
    classification: Optional[str]
    agency_variants: List[AgencyVariantData] = field(default_factory=list)
    owner_type: Optional[str] = None
    requires_manual_input: bool = False
    is_also_from_agency: bool = False
    exclusivity_hint: bool = False

    @property
    def distinct_agencies(self) -> int:
        return len({v.agency_key for v in self.agency_variants})


class ListingClassifier:
    """
    Classify a raw listing, optionally against the canonical listing it duplicates.

    Classification follows the distinct agencies advertising the unit:
    - no agency, owner contact present -> private
    - one distinct agency -> single-agency
    - two or more distinct agencies -> multi-agency

    Agency variants form a set keyed by (normalized agency name, portal);
    re-ingesting the same pair updates the variant in place. An owner contact
    that coexists with agency variants is kept and flagged with
    ``is_also_from_agency`` rather than collapsed into either side.
    """

    def __init__(self, settings: Settings = None):
        self.settings = settings or default_settings
        self.private_keywords = self.settings.get_private_seller_keywords_list()
        self.exclusivity_keywords = self.settings.get_exclusivity_keywords_list()

    def is_private_seller_name(self, name: Optional[str]) -> bool:
        """Check if an advertiser name actually denotes a private seller ("Privato", ...)"""
        key = normalize_agency_name(name)
        return bool(key) and any(keyword.replace(' ', '') in key for keyword in self.private_keywords)

    def detect_contacts(self, raw: RawListingPayload):
        """
        Detect owner and agency contacts in a raw listing.

        Returns:
            Tuple of (has_owner, agency_variant_or_None)

        Raises:
            MissingClassificationInputError: neither contact type is present
        """
        agency = None
        has_owner = raw.has_owner_contact

        if raw.has_agency_contact:
            if self.is_private_seller_name(raw.agency_name):
                has_owner = True
            else:
                agency = AgencyVariantData(
                    agency_name=raw.agency_name.strip(),
                    agency_key=normalize_agency_name(raw.agency_name),
                    portal_source=PORTAL_NAMES.get(raw.portal_source, raw.portal_source),
                    agency_phone=normalize_italian_phone(raw.agency_phone) or raw.agency_phone,
                    external_id=raw.external_id,
                    url=raw.url,
                )

        if not has_owner and agency is None:
            raise MissingClassificationInputError(
                f"No owner or agency contact for listing at '{raw.address}' ({raw.portal_source})"
            )
        return has_owner, agency

    def classify(self, raw: RawListingPayload, existing=None) -> ClassificationResult:
        """
        Classify raw against an optional existing canonical listing.

        Pure: neither raw nor existing is modified.

        Args:
            raw: Adapted raw listing
            existing: Canonical Listing the raw listing duplicates, if any

        Returns:
            ClassificationResult with the merged, ordered agency variants
        """
        variants = [AgencyVariantData.from_model(v) for v in existing.agency_variants] if existing is not None else []
        existing_owner = existing is not None and existing.owner_type == 'private'

        try:
            has_owner, agency = self.detect_contacts(raw)
        except MissingClassificationInputError as e:
            if existing is None or (not variants and not existing_owner):
                logger.warning(f"[Classifier] Classification requires manual input, reason: {e}, hint: {raw.classification_hint}")
                return ClassificationResult(classification=None, agency_variants=variants, requires_manual_input=True)
            has_owner, agency = False, None

        if agency is not None:
            variants = self._upsert_variant(variants, agency)

        has_owner = has_owner or existing_owner
        distinct = len({v.agency_key for v in variants})

        if distinct == 0:
            classification = PRIVATE
        elif distinct == 1:
            classification = SINGLE_AGENCY
        else:
            classification = MULTI_AGENCY

        description = raw.description or (existing.description if existing is not None else None) or ''
        exclusivity_hint = classification == SINGLE_AGENCY and self._mentions_exclusivity(description)

        result = ClassificationResult(
            classification=classification,
            agency_variants=variants,
            owner_type=PRIVATE if has_owner else 'agency',
            requires_manual_input=False,
            is_also_from_agency=has_owner and distinct > 0,
            exclusivity_hint=exclusivity_hint,
        )

        if raw.classification_hint and raw.classification_hint != classification:
            logger.debug(f"[Classifier] Overriding classification hint, hint: {raw.classification_hint}, derived: {classification}")

        logger.debug(f"[Classifier] Classified listing, address: {raw.address}, classification: {classification}, agencies: {distinct}, variants: {len(variants)}")
        return result

    def _upsert_variant(self, variants: List[AgencyVariantData], agency: AgencyVariantData) -> List[AgencyVariantData]:
        merged = list(variants)
        for idx, variant in enumerate(merged):
            if variant.identity == agency.identity:
                merged[idx] = replace(
                    variant,
                    agency_name=agency.agency_name,
                    agency_phone=agency.agency_phone or variant.agency_phone,
                    external_id=agency.external_id or variant.external_id,
                    url=agency.url or variant.url,
                )
                return merged
        merged.append(agency)
        return merged

    def _mentions_exclusivity(self, description: str) -> bool:
        text = description.lower()
        return any(keyword in text for keyword in self.exclusivity_keywords)
