"""
Unit tests for Deduplicator.
Tests the same-unit rule, external-ID lookup and ambiguous duplicates.
"""
import pytest
from datetime import datetime
from casamatch.core.database import DedupConflict
from casamatch.utils.duplicate_detector import Deduplicator
from casamatch.utils.portal_adapters import RawListingPayload


def raw_listing(**fields):
    values = {
        'portal_source': 'scraper-idealista',
        'address': 'Via Roma 10',
        'city': 'Milano',
        'price': 252000,
        'size': 81,
        'agency_name': 'Bianchi Case',
    }
    values.update(fields)
    return RawListingPayload(**values)


class TestIsSameUnit:
    """Test the address + price + size + city rule"""

    @pytest.fixture
    def canonical(self, make_listing):
        return make_listing(address='Via Roma 10', price=250000, size=80)

    def test_within_tolerance(self, db_session, test_settings, canonical):
        assert Deduplicator(db_session, test_settings).is_same_unit(raw_listing(), canonical)

    @pytest.mark.parametrize("price,expected", [
        (245100, True),
        (255000, True),
        (245000, False),
        (255001, False),
    ])
    def test_price_band(self, db_session, test_settings, canonical, price, expected):
        detector = Deduplicator(db_session, test_settings)

        assert detector.is_same_unit(raw_listing(price=price), canonical) is expected

    @pytest.mark.parametrize("other_price", [255000, 255100])
    def test_price_band_is_symmetric(self, db_session, test_settings, make_listing, other_price):
        detector = Deduplicator(db_session, test_settings)
        low = make_listing(address='Via Roma 10', price=250000, size=80)
        high = make_listing(address='Via Roma 10', price=other_price, size=80)

        forward = detector.is_same_unit(raw_listing(price=other_price, size=80), low)
        backward = detector.is_same_unit(raw_listing(price=250000, size=80), high)

        assert forward == backward

    @pytest.mark.parametrize("size,expected", [(78, True), (82, True), (77.5, False), (83, False)])
    def test_size_band(self, db_session, test_settings, canonical, size, expected):
        detector = Deduplicator(db_session, test_settings)

        assert detector.is_same_unit(raw_listing(size=size), canonical) is expected

    def test_abbreviated_address_matches(self, db_session, test_settings, canonical):
        detector = Deduplicator(db_session, test_settings)

        assert detector.is_same_unit(raw_listing(address='V. Roma, 10 - Milano'), canonical)

    def test_different_house_number(self, db_session, test_settings, canonical):
        detector = Deduplicator(db_session, test_settings)

        assert not detector.is_same_unit(raw_listing(address='Via Roma 12'), canonical)

    def test_different_city(self, db_session, test_settings, canonical):
        detector = Deduplicator(db_session, test_settings)

        assert not detector.is_same_unit(raw_listing(city='Torino'), canonical)

    def test_missing_size_never_matches(self, db_session, test_settings, canonical):
        detector = Deduplicator(db_session, test_settings)

        assert not detector.is_same_unit(raw_listing(size=None), canonical)

    def test_generic_address_never_matches(self, db_session, test_settings, make_listing):
        canonical = make_listing(address='Milano', price=250000, size=80, normalized_address=None)
        detector = Deduplicator(db_session, test_settings)

        assert not detector.is_same_unit(raw_listing(address='Milano'), canonical)

    def test_custom_tolerance(self, db_session, test_settings, canonical):
        settings = test_settings.model_copy(update={'dedup_price_tolerance_percent': 5.0})
        detector = Deduplicator(db_session, settings)

        assert detector.is_same_unit(raw_listing(price=262000), canonical)


class TestAddressesMatch:
    """Test optional fuzzy address comparison"""

    def test_exact_by_default(self, db_session, test_settings):
        detector = Deduplicator(db_session, test_settings)

        assert detector.addresses_match('via roma 10', 'via roma 10')
        assert not detector.addresses_match('via roma 10', 'via roma 10 a')

    def test_fuzzy_threshold(self, db_session, test_settings):
        settings = test_settings.model_copy(update={'dedup_address_similarity': 90})
        detector = Deduplicator(db_session, settings)

        assert detector.addresses_match('viale monza 120', 'viale monza 12o')
        assert not detector.addresses_match('viale monza 120', 'via padova 7')

    def test_empty_never_matches(self, db_session, test_settings):
        assert not Deduplicator(db_session, test_settings).addresses_match('', '')


class TestFindCanonical:
    """Test canonical lookup"""

    def test_no_candidates(self, db_session, test_settings):
        assert Deduplicator(db_session, test_settings).find_canonical(raw_listing()) is None

    def test_found_in_database(self, db_session, test_settings, make_listing):
        canonical = make_listing(address='Via Roma 10', price=250000, size=80)
        make_listing(address='Via Roma 10', city='Torino', price=250000, size=80)

        found = Deduplicator(db_session, test_settings).find_canonical(raw_listing())

        assert found.id == canonical.id

    def test_explicit_candidate_pool(self, db_session, test_settings, make_listing):
        canonical = make_listing(address='Via Roma 10', price=250000, size=80)
        other = make_listing(address='Via Dante 3', price=250000, size=80)
        detector = Deduplicator(db_session, test_settings)

        assert detector.find_canonical(raw_listing(), [other]) is None
        assert detector.find_canonical(raw_listing(), [other, canonical]).id == canonical.id

    def test_find_by_external_id(self, db_session, test_settings, make_listing):
        canonical = make_listing(address='Via Roma 10', agencies=[('Bianchi Case', 'idealista.it')])
        canonical.agency_variants[0].external_id = 'ide-2002'
        db_session.commit()
        detector = Deduplicator(db_session, test_settings)

        found = detector.find_by_external_id('scraper-idealista', 'ide-2002')

        assert found.id == canonical.id
        assert detector.find_by_external_id('scraper-immobiliare', 'ide-2002') is None
        assert detector.find_by_external_id('scraper-idealista', None) is None

    def test_external_id_wins_over_unit_rule(self, db_session, test_settings, make_listing):
        """Test a re-scraped ad resolves to its canonical even after a price change"""
        canonical = make_listing(address='Via Roma 10', price=250000, size=80,
                                 agencies=[('Bianchi Case', 'idealista.it')])
        canonical.agency_variants[0].external_id = 'ide-2002'
        db_session.commit()

        raw = raw_listing(price=230000, external_id='ide-2002')
        found = Deduplicator(db_session, test_settings).find_canonical(raw)

        assert found.id == canonical.id


class TestAmbiguousDuplicate:
    """Test several canonicals matching the same raw listing"""

    def test_most_recent_chosen_and_conflict_recorded(self, db_session, test_settings, make_listing, caplog):
        older = make_listing(address='Via Roma 10', price=250000, size=80, created_at=datetime(2024, 1, 1))
        newer = make_listing(address='Via Roma 10', price=251000, size=80, created_at=datetime(2024, 3, 1))
        detector = Deduplicator(db_session, test_settings)

        with caplog.at_level('WARNING'):
            found = detector.find_canonical(raw_listing())

        assert found.id == newer.id
        assert 'Ambiguous duplicate' in caplog.text

        db_session.flush()
        conflict = db_session.query(DedupConflict).one()
        assert conflict.chosen_listing_id == newer.id
        assert sorted(conflict.get_candidate_ids()) == sorted([older.id, newer.id])
        assert conflict.raw_address == 'Via Roma 10'

    def test_resolution_is_deterministic(self, db_session, test_settings, make_listing):
        make_listing(address='Via Roma 10', price=250000, size=80, created_at=datetime(2024, 3, 1))
        newer = make_listing(address='Via Roma 10', price=251000, size=80, created_at=datetime(2024, 3, 1))
        detector = Deduplicator(db_session, test_settings)

        assert detector.find_canonical(raw_listing()).id == newer.id
        assert detector.find_canonical(raw_listing()).id == newer.id
