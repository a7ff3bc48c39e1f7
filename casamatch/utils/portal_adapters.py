"""
Per-portal adapters turning raw scraped/imported payloads into RawListingPayload.

Every portal ships a differently shaped JSON document. Adapters flatten those
shapes so classification and deduplication never look at portal specifics.
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

SOURCES = (
    'owned',
    'scraper-immobiliare',
    'scraper-idealista',
    'scraper-clickcase',
    'scraper-casadaprivato',
    'manual-import',
)

PORTAL_NAMES = {
    'scraper-immobiliare': 'immobiliare.it',
    'scraper-idealista': 'idealista.it',
    'scraper-clickcase': 'clickcase.it',
    'scraper-casadaprivato': 'casadaprivato.it',
    'manual-import': 'manual',
    'owned': 'owned',
}


@dataclass
class RawListingPayload:
    """Portal-agnostic view of one imported advertisement"""

    portal_source: str
    address: str = ''
    city: str = ''
    price: Optional[float] = None
    size: Optional[float] = None
    bedrooms: Optional[int] = None
    bathrooms: Optional[int] = None
    floor: Optional[str] = None
    description: Optional[str] = None
    property_type: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    owner_name: Optional[str] = None
    owner_phone: Optional[str] = None
    agency_name: Optional[str] = None
    agency_phone: Optional[str] = None
    external_id: Optional[str] = None
    url: Optional[str] = None
    classification_hint: Optional[str] = None

    @property
    def location(self) -> Optional[Dict[str, float]]:
        if self.latitude is None or self.longitude is None:
            return None
        return {'lat': self.latitude, 'lng': self.longitude}

    @property
    def has_agency_contact(self) -> bool:
        return bool(self.agency_name and self.agency_name.strip())

    @property
    def has_owner_contact(self) -> bool:
        return bool((self.owner_name and self.owner_name.strip()) or (self.owner_phone and self.owner_phone.strip()))


def parse_number(value) -> Optional[float]:
    """
    Parse a number from portal text.

    Handles Italian thousands separators ("250.000 €") and decimal commas.

    Examples:
        >>> parse_number("€ 250.000")
        250000.0
        >>> parse_number("80 m²")
        80.0
        >>> parse_number(None)
        None
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None

    text = str(value).replace('m²', '').replace('mq', '')
    match = re.search(r"\d[\d.,]*", text)
    if not match:
        return None
    digits = match.group(0).rstrip('.,')
    if ',' in digits:
        digits = digits.replace('.', '').replace(',', '.')
    elif re.fullmatch(r"\d{1,3}(\.\d{3})+", digits):
        digits = digits.replace('.', '')
    try:
        return float(digits)
    except ValueError:
        return None


def _parse_coordinate(value) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _parse_int(value) -> Optional[int]:
    number = parse_number(value)
    return int(number) if number is not None else None


def _text(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _common_fields(data: Dict) -> Dict[str, Any]:
    """Fields that share the flat names of the import contract"""
    location = data.get('location')
    if not isinstance(location, dict):
        location = {}
    return {
        'address': _text(data.get('address')) or '',
        'city': _text(data.get('city')) or '',
        'price': parse_number(data.get('price')),
        'size': parse_number(data.get('size')),
        'bedrooms': _parse_int(data.get('bedrooms')),
        'bathrooms': _parse_int(data.get('bathrooms')),
        'floor': _text(data.get('floor')),
        'description': _text(data.get('description')),
        'property_type': _text(data.get('property_type') or data.get('type')),
        'latitude': _parse_coordinate(data.get('latitude', location.get('lat'))),
        'longitude': _parse_coordinate(data.get('longitude', location.get('lng'))),
        'owner_name': _text(data.get('owner_name')),
        'owner_phone': _text(data.get('owner_phone')),
        'agency_name': _text(data.get('agency_name')),
        'agency_phone': _text(data.get('agency_phone')),
        'external_id': _text(data.get('external_id')),
        'url': _text(data.get('url')),
        'classification_hint': _text(data.get('classification')),
    }


def adapt_generic(data: Dict, portal_source: str) -> RawListingPayload:
    """Adapter for payloads already in the flat import contract (owned, manual-import)"""
    return RawListingPayload(portal_source=portal_source, **_common_fields(data))


def adapt_immobiliare(data: Dict, portal_source: str) -> RawListingPayload:
    """
    Adapter for immobiliare.it scraper items.

    Nested shape: ``price.raw``, ``topology.surface.size``, ``topology.rooms``,
    ``geography.street`` / ``geography.geolocation``, ``analytics.agencyName``.
    """
    fields = _common_fields(data)

    price = data.get('price')
    if isinstance(price, dict):
        fields['price'] = parse_number(price.get('raw') or price.get('value'))

    topology = data.get('topology') or {}
    surface = topology.get('surface')
    if isinstance(surface, dict):
        fields['size'] = parse_number(surface.get('size')) or fields['size']
    elif surface is not None:
        fields['size'] = parse_number(surface)
    if topology.get('rooms') is not None:
        fields['bedrooms'] = _parse_int(topology.get('rooms'))
    if topology.get('bathrooms') is not None:
        fields['bathrooms'] = _parse_int(topology.get('bathrooms'))

    geography = data.get('geography') or {}
    if geography.get('street'):
        fields['address'] = _text(geography.get('street'))
    geolocation = geography.get('geolocation') or {}
    if geolocation:
        fields['latitude'] = _parse_coordinate(geolocation.get('latitude'))
        fields['longitude'] = _parse_coordinate(geolocation.get('longitude'))

    analytics = data.get('analytics') or {}
    advertiser = data.get('advertiser') or {}
    agency = advertiser.get('agency') or {}
    if agency or analytics.get('agencyName'):
        fields['agency_name'] = _text(agency.get('displayName') or analytics.get('agencyName')) or fields['agency_name']
        fields['agency_phone'] = _text(agency.get('phone')) or fields['agency_phone']
    supervisor = advertiser.get('supervisor') or {}
    if not fields['agency_name'] and supervisor.get('type') == 'user':
        fields['owner_name'] = _text(supervisor.get('displayName')) or fields['owner_name']
        fields['owner_phone'] = _text(supervisor.get('phone')) or fields['owner_phone']

    if data.get('id') is not None and not fields['external_id']:
        fields['external_id'] = str(data['id'])

    return RawListingPayload(portal_source=portal_source, **fields)


def adapt_idealista(data: Dict, portal_source: str) -> RawListingPayload:
    """
    Adapter for idealista.it scraper items.

    Uses ``adid``/``propertyCode`` as id, ``ubication`` as address fallback and
    the ``contact`` block (``commercialName``, ``userType``) for the advertiser.
    """
    fields = _common_fields(data)

    if fields['price'] is None:
        fields['price'] = parse_number((data.get('priceInfo') or {}).get('amount'))
    if fields['size'] is None:
        fields['size'] = parse_number(data.get('surface'))
    if fields['bedrooms'] is None:
        fields['bedrooms'] = _parse_int(data.get('rooms'))
    if not fields['address']:
        fields['address'] = _text(data.get('ubication')) or ''
    if not fields['city']:
        fields['city'] = _text(data.get('municipality')) or ''
    if not fields['external_id']:
        fields['external_id'] = _text(data.get('adid') or data.get('propertyCode'))

    contact = data.get('contact') or data.get('contactInfo') or {}
    if contact:
        user_type = (contact.get('userType') or '').lower()
        name = _text(contact.get('commercialName') or contact.get('agencyName') or contact.get('contactName'))
        phone = _text(contact.get('phone') or (contact.get('phone1') or {}).get('formattedPhone'))
        if user_type == 'private' or (user_type == '' and not contact.get('commercialName')):
            fields['owner_name'] = name or fields['owner_name']
            fields['owner_phone'] = phone or fields['owner_phone']
        else:
            fields['agency_name'] = name or fields['agency_name']
            fields['agency_phone'] = phone or fields['agency_phone']

    return RawListingPayload(portal_source=portal_source, **fields)


def adapt_casadaprivato(data: Dict, portal_source: str) -> RawListingPayload:
    """
    Adapter for casadaprivato.it: private sellers only.

    The advertiser shown on the card is the owner; ``contactName`` maps to
    ``owner_name`` unless an agency already filled the flat fields.
    """
    fields = _common_fields(data)
    if fields['bedrooms'] is None:
        fields['bedrooms'] = _parse_int(data.get('rooms'))
    if not fields['owner_name'] and not fields['agency_name']:
        fields['owner_name'] = _text(data.get('contactName'))
    if not fields['owner_phone']:
        fields['owner_phone'] = _text(data.get('contactPhone'))
    return RawListingPayload(portal_source=portal_source, **fields)


def adapt_clickcase(data: Dict, portal_source: str) -> RawListingPayload:
    """Adapter for clickcase.it: text fields ("250.000 €", "80 mq") and ``ownerPhone``"""
    fields = _common_fields(data)
    if not fields['owner_phone']:
        fields['owner_phone'] = _text(data.get('ownerPhone'))
    if not fields['agency_name']:
        fields['agency_name'] = _text(data.get('agencyName'))
    return RawListingPayload(portal_source=portal_source, **fields)


ADAPTERS: Dict[str, Callable[[Dict, str], RawListingPayload]] = {
    'owned': adapt_generic,
    'manual-import': adapt_generic,
    'scraper-immobiliare': adapt_immobiliare,
    'scraper-idealista': adapt_idealista,
    'scraper-casadaprivato': adapt_casadaprivato,
    'scraper-clickcase': adapt_clickcase,
}


def adapt_payload(data: Dict) -> RawListingPayload:
    """
    Normalize a raw payload using the adapter of its ``portal_source``.

    Args:
        data: Raw payload; ``portal_source`` (or ``source``) selects the adapter

    Returns:
        RawListingPayload

    Raises:
        ValueError: unknown portal source
    """
    portal_source = data.get('portal_source') or data.get('source') or 'manual-import'
    if portal_source not in SOURCES:
        raise ValueError(f"Unknown portal source: {portal_source}")
    adapter = ADAPTERS[portal_source]

    raw = adapter(data, portal_source)
    logger.debug(f"[Portal Adapter] Adapted payload, source: {portal_source}, address: {raw.address}, price: {raw.price}")
    return raw
