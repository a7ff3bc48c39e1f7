"""Utility modules for CasaMatch"""

from casamatch.utils.phone_normalizer import normalize_italian_phone
from casamatch.utils.geo_filter import GeoFilter
from casamatch.utils.criteria_matcher import CriteriaMatcher
from casamatch.utils.listing_classifier import ListingClassifier
from casamatch.utils.duplicate_detector import Deduplicator

__all__ = [
    'normalize_italian_phone',
    'GeoFilter',
    'CriteriaMatcher',
    'ListingClassifier',
    'Deduplicator',
]
