"""Address and agency-name normalization used for duplicate detection"""

import re
import unicodedata
from typing import Optional

# Street-type abbreviations found on Italian portals, expanded to full form
STREET_TYPE_ABBREVIATIONS = {
    'v': 'via',
    'v.le': 'viale',
    'vle': 'viale',
    'c.so': 'corso',
    'cso': 'corso',
    'p.za': 'piazza',
    'p.zza': 'piazza',
    'pza': 'piazza',
    'pzza': 'piazza',
    'p.le': 'piazzale',
    'ple': 'piazzale',
    'l.go': 'largo',
    'lgo': 'largo',
    'str': 'strada',
    'vic': 'vicolo',
    'b.go': 'borgo',
    'bgo': 'borgo',
    'c.ne': 'circonvallazione',
    'ave': 'avenue',
    'st': 'street',
    'rd': 'road',
}

# Bare city/country names are never specific enough to identify a unit
GENERIC_ADDRESSES = {
    'milano', 'roma', 'torino', 'firenze', 'bologna', 'napoli',
    'genova', 'venezia', 'italy', 'italia',
}

_TOKEN_RE = re.compile(r"[a-z0-9]+(?:\.[a-z0-9]+)*\.?")


def _strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize('NFD', text)
    return ''.join(c for c in decomposed if not unicodedata.combining(c))


def normalize_city(city: Optional[str]) -> str:
    """
    Normalize a city name for comparison.

    Examples:
        >>> normalize_city("  Milano ")
        'milano'
        >>> normalize_city("Forlì")
        'forli'
    """
    if not city:
        return ''
    text = _strip_accents(city.casefold())
    text = re.sub(r"[^a-z0-9]+", ' ', text)
    return ' '.join(text.split())


def normalize_address(address: Optional[str], city: Optional[str] = None) -> str:
    """
    Normalize a free-text street address.

    Case-folds, strips accents and punctuation, expands street-type
    abbreviations and drops a trailing city name when it repeats ``city``.

    Args:
        address: Raw address text (can be None)
        city: City of the listing, used to drop a redundant suffix

    Returns:
        Normalized address, empty string if nothing is left

    Examples:
        >>> normalize_address("V.le Monza, 12")
        'viale monza 12'
        >>> normalize_address("Via Roma 10, Milano", city="Milano")
        'via roma 10'
    """
    if not address:
        return ''

    text = _strip_accents(address.casefold())

    words = []
    for token in _TOKEN_RE.findall(text):
        key = token.rstrip('.')
        expanded = STREET_TYPE_ABBREVIATIONS.get(key) or STREET_TYPE_ABBREVIATIONS.get(token)
        if expanded:
            words.append(expanded)
        else:
            words.extend(w for w in re.split(r"[^a-z0-9]+", key) if w)

    city_words = normalize_city(city).split()
    if city_words and len(words) > len(city_words) and words[-len(city_words):] == city_words:
        words = words[:-len(city_words)]

    return ' '.join(words)


def is_generic_address(address: Optional[str]) -> bool:
    """
    Check if an address is too vague to identify a single unit.

    An address is generic when it is empty, shorter than 5 characters,
    a bare city name, or carries no house number.
    """
    if not address or not address.strip():
        return True

    normalized = normalize_address(address)
    if normalized in GENERIC_ADDRESSES:
        return True
    if not re.search(r"\d", address):
        return True
    if len(normalized) < 5:
        return True
    return False


def normalize_agency_name(name: Optional[str]) -> str:
    """
    Normalize an agency name to a comparison key.

    Examples:
        >>> normalize_agency_name("Rossi Immobiliare S.r.l.")
        'rossiimmobiliaresrl'
    """
    if not name or not isinstance(name, str):
        return ''
    text = _strip_accents(name.strip().casefold())
    return re.sub(r"[^a-z0-9]", '', text)
