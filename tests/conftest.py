"""
Pytest configuration and shared fixtures for CasaMatch tests.
"""
import os
import pytest
from sqlalchemy.pool import StaticPool
from datetime import datetime, timedelta

# Keep the API module's own engine off the working directory
os.environ.setdefault("DATABASE_URL", "sqlite://")

from casamatch.core.database import AgencyVariant, BuyerPreference, Client, Listing, init_db
from casamatch.core.config import Settings
from casamatch.utils.address_normalizer import normalize_address, normalize_city


@pytest.fixture(scope="session")
def test_settings():
    """Create test settings with the default tolerances"""
    return Settings(
        # Database
        database_url="sqlite:///:memory:",

        # Geometry
        earth_radius_km=6371.0,
        default_search_radius_meters=2000,

        # Deduplication
        dedup_price_tolerance_percent=2.0,
        dedup_size_tolerance_sqm=2.0,
        dedup_address_similarity=100,

        # Matching
        match_price_tolerance_percent=0.0,
        match_size_tolerance_percent=0.0,

        # Ingestion / re-matching
        ingest_max_retries=3,
        rematch_interval_minutes=30,
        rematch_max_workers=4,

        log_file="casamatch-test.log"
    )


@pytest.fixture(scope="function")
def session_factory(test_settings):
    """Session factory bound to a fresh in-memory database shared across threads"""
    engine, SessionLocal = init_db(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )

    yield SessionLocal

    engine.dispose()


@pytest.fixture(scope="function")
def db_session(session_factory):
    """
    Create a fresh in-memory database session for each test.

    Objects stay loaded after commit so the session holds no open
    transaction while the API or scheduler use the same connection.
    """
    session = session_factory(expire_on_commit=False)

    yield session

    session.close()


@pytest.fixture
def make_buyer(db_session):
    """Factory creating a client of type buyer with an optional preference"""
    def _make_buyer(first_name="Giulia", last_name="Bianchi", client_type="buyer", with_preference=True, **pref):
        client = Client(type=client_type, first_name=first_name, last_name=last_name, phone="3331234567")
        db_session.add(client)
        db_session.flush()

        if with_preference:
            search_area = pref.pop('search_area', None)
            preference = BuyerPreference(client_id=client.id, **pref)
            preference.search_area = search_area
            db_session.add(preference)

        db_session.commit()
        return client

    return _make_buyer


@pytest.fixture
def make_listing(db_session):
    """Factory creating a canonical listing"""
    counter = {'n': 0}

    def _make_listing(agencies=(), **fields):
        counter['n'] += 1
        values = {
            'address': f"Via Torino {counter['n']}",
            'city': 'Milano',
            'price': 280000,
            'size': 75,
            'bedrooms': 2,
            'property_type': 'apartment',
            'latitude': 45.4650,
            'longitude': 9.1905,
            'status': 'available',
            'source': 'manual-import',
            'classification': 'private',
            'owner_type': 'private',
            'created_at': datetime(2024, 1, 1) + timedelta(hours=counter['n']),
        }
        values.update(fields)
        values.setdefault('normalized_address', normalize_address(values['address'], values['city']))
        values.setdefault('city_key', normalize_city(values['city']))
        listing = Listing(**values)

        for agency_name, portal in agencies:
            listing.agency_variants.append(AgencyVariant(
                agency_name=agency_name,
                agency_key=agency_name.lower().replace(' ', ''),
                portal_source=portal
            ))

        db_session.add(listing)
        db_session.commit()
        return listing

    return _make_listing


@pytest.fixture
def duomo_area():
    """Circle of 2 km around the Duomo di Milano"""
    return {'center': {'lat': 45.4642, 'lng': 9.1900}, 'radiusMeters': 2000}


@pytest.fixture
def rossi_payload():
    return {
        'portal_source': 'scraper-immobiliare',
        'address': 'Via Roma 10',
        'city': 'Milano',
        'price': 250000,
        'size': 80,
        'bedrooms': 3,
        'agency_name': 'Rossi Immobiliare',
        'agency_phone': '+39 02 1234567',
        'external_id': 'imm-1001',
        'url': 'https://www.immobiliare.it/annunci/1001/',
    }


@pytest.fixture
def bianchi_payload():
    return {
        'portal_source': 'scraper-idealista',
        'address': 'Via Roma 10',
        'city': 'Milano',
        'price': 252000,
        'size': 81,
        'bedrooms': 3,
        'agency_name': 'Bianchi Case',
        'agency_phone': '02 7654321',
        'external_id': 'ide-2002',
        'url': 'https://www.idealista.it/immobile/2002/',
    }


@pytest.fixture
def private_payload():
    return {
        'portal_source': 'scraper-casadaprivato',
        'address': 'Corso Buenos Aires 45',
        'city': 'Milano',
        'price': 310000,
        'size': 90,
        'owner_name': 'Mario Rossi',
        'owner_phone': '+39 333 1234567',
    }
