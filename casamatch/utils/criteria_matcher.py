"""Listing matching against a buyer's stated preferences"""

import logging
from typing import Optional, Tuple

from casamatch.core.config import Settings, settings as default_settings
from casamatch.utils.geo_filter import GeoFilter

logger = logging.getLogger(__name__)

PROPERTY_TYPES = ('apartment', 'house', 'villa', 'penthouse', 'commercial', 'land')

# Sentinels meaning "no type constraint"
ANY_PROPERTY_TYPE = ('', 'any', 'qualsiasi', 'tutti')

PROPERTY_TYPE_SYNONYMS = {
    'appartamento': 'apartment',
    'monolocale': 'apartment',
    'bilocale': 'apartment',
    'trilocale': 'apartment',
    'quadrilocale': 'apartment',
    'flat': 'apartment',
    'attico': 'penthouse',
    'casa': 'house',
    'casa indipendente': 'house',
    'casa semindipendente': 'house',
    'villetta': 'villa',
    'villa a schiera': 'villa',
    'ufficio': 'commercial',
    'negozio': 'commercial',
    'locale commerciale': 'commercial',
    'office': 'commercial',
    'terreno': 'land',
}


def normalize_property_type(property_type: Optional[str]) -> str:
    """
    Normalize a property type label to the canonical enum value.

    Examples:
        >>> normalize_property_type("Appartamento")
        'apartment'
        >>> normalize_property_type(" villa ")
        'villa'
        >>> normalize_property_type(None)
        ''
    """
    if not property_type:
        return ''
    normalized = ' '.join(property_type.strip().lower().split())
    return PROPERTY_TYPE_SYNONYMS.get(normalized, normalized)


class CriteriaMatcher:
    """
    Decide whether a listing satisfies a buyer preference.

    Applies, AND-combined:
    - Availability (sold/pending listings never match)
    - Price range
    - Size range
    - Minimum rooms (unknown bedrooms never satisfy a stated minimum)
    - Property type (exact after synonym normalization)
    - Search area (delegated to GeoFilter, fail-closed)
    """

    def __init__(self, settings: Settings = None, geo_filter: GeoFilter = None):
        """
        Initialize criteria matcher.

        Args:
            settings: Application settings (tolerances, geometry constants)
            geo_filter: Geo filter used for search area containment
        """
        self.settings = settings or default_settings
        self.geo_filter = geo_filter or GeoFilter(
            earth_radius_km=self.settings.earth_radius_km,
            default_radius_meters=self.settings.default_search_radius_meters
        )

    def matches(self, listing, pref) -> bool:
        """Check if listing satisfies every criterion of pref"""
        passes, _ = self.evaluate(listing, pref)
        return passes

    def evaluate(self, listing, pref) -> Tuple[bool, Optional[str]]:
        """
        Check listing against all criteria of pref.

        Args:
            listing: Listing (price, size, bedrooms, property_type, location, status)
            pref: BuyerPreference

        Returns:
            Tuple of (passes, reason) where reason is None on success,
            otherwise a description of the first failing criterion
        """
        if not self._passes_status_filter(listing):
            return False, f"Listing status '{listing.status}' is not available"

        if not self._passes_price_filter(listing, pref):
            return False, f"Price {listing.price} outside range {pref.min_price}-{pref.max_price}"

        if not self._passes_size_filter(listing, pref):
            return False, f"Size {listing.size}m² outside range {pref.min_size}-{pref.max_size}m²"

        if not self._passes_rooms_filter(listing, pref):
            return False, f"Bedrooms {listing.bedrooms} below minimum {pref.min_rooms}"

        if not self._passes_type_filter(listing, pref):
            return False, f"Type '{listing.property_type}' does not match '{pref.property_type}'"

        if not self._passes_location_filter(listing, pref):
            return False, "Location outside search area or unknown"

        return True, None

    def _passes_status_filter(self, listing) -> bool:
        status = getattr(listing, 'status', None)
        return status is None or status == 'available'

    def _passes_price_filter(self, listing, pref) -> bool:
        """
        Check price against [min_price, max_price].

        Absent bounds are unconstrained. ``match_price_tolerance_percent``
        widens max_price only.
        """
        price = listing.price
        if pref.min_price is None and pref.max_price is None:
            return True
        if price is None:
            return False

        if pref.min_price is not None and price < pref.min_price:
            return False

        if pref.max_price is not None:
            max_acceptable = pref.max_price * (1 + self.settings.match_price_tolerance_percent / 100)
            if price > max_acceptable:
                return False

        return True

    def _passes_size_filter(self, listing, pref) -> bool:
        """
        Check size against [min_size, max_size].

        ``match_size_tolerance_percent`` lowers min_size only.
        """
        size = listing.size
        if pref.min_size is None and pref.max_size is None:
            return True
        if size is None:
            return False

        if pref.min_size is not None:
            min_acceptable = pref.min_size * (1 - self.settings.match_size_tolerance_percent / 100)
            if size < min_acceptable:
                return False

        if pref.max_size is not None and size > pref.max_size:
            return False

        return True

    def _passes_rooms_filter(self, listing, pref) -> bool:
        if pref.min_rooms is None:
            return True
        if listing.bedrooms is None:
            return False
        return listing.bedrooms >= pref.min_rooms

    def _passes_type_filter(self, listing, pref) -> bool:
        wanted = normalize_property_type(pref.property_type)
        if wanted in ANY_PROPERTY_TYPE:
            return True
        return normalize_property_type(listing.property_type) == wanted

    def _passes_location_filter(self, listing, pref) -> bool:
        area = pref.search_area
        if not area:
            return True

        location = listing.location
        if location is None:
            logger.debug(f"[Criteria Matcher] Listing has no location but buyer has a search area, id: {getattr(listing, 'id', None)}")
            return False

        return self.geo_filter.contains(location, area)
