from sqlalchemy import create_engine, event, Column, Integer, String, Float, DateTime, Boolean, Text, ForeignKey, UniqueConstraint
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker, relationship
from sqlalchemy.ext.orderinglist import ordering_list
from datetime import datetime
import json

Base = declarative_base()


class Client(Base):
    __tablename__ = 'clients'

    id = Column(Integer, primary_key=True)
    type = Column(String(20), nullable=False, default='buyer', index=True)  # buyer, seller, both
    first_name = Column(String(100))
    last_name = Column(String(100))
    phone = Column(String(50))
    created_at = Column(DateTime, default=datetime.utcnow)

    preference = relationship(
        "BuyerPreference", back_populates="client", uselist=False, cascade="all, delete-orphan"
    )
    notifications = relationship("NotificationRecord", back_populates="buyer", cascade="all, delete-orphan")

    @property
    def is_buyer(self):
        return self.type in ('buyer', 'both')

    @property
    def full_name(self):
        return ' '.join(p for p in (self.first_name, self.last_name) if p)


class BuyerPreference(Base):
    __tablename__ = 'buyer_preferences'

    id = Column(Integer, primary_key=True)
    client_id = Column(Integer, ForeignKey('clients.id'), unique=True, nullable=False)

    # Budget / size
    min_price = Column(Integer)
    max_price = Column(Integer)
    min_size = Column(Integer)
    max_size = Column(Integer)
    min_rooms = Column(Integer)

    # apartment, house, villa, penthouse, commercial, land (or None/'any')
    property_type = Column(String(50))

    # Circle {center, radiusMeters} or GeoJSON geometry, stored as JSON
    search_area_json = Column(Text)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    client = relationship("Client", back_populates="preference")

    @property
    def buyer_id(self):
        return self.client_id

    @property
    def search_area(self):
        """Get search area as dict"""
        if self.search_area_json:
            return json.loads(self.search_area_json)
        return None

    @search_area.setter
    def search_area(self, area):
        """Set search area from dict"""
        self.search_area_json = json.dumps(area) if area else None

    def to_dict(self):
        return {
            'id': self.id,
            'buyer_id': self.client_id,
            'min_price': self.min_price,
            'max_price': self.max_price,
            'min_size': self.min_size,
            'max_size': self.max_size,
            'min_rooms': self.min_rooms,
            'property_type': self.property_type,
            'search_area': self.search_area,
        }


class Listing(Base):
    __tablename__ = 'listings'

    id = Column(Integer, primary_key=True)

    # Address
    address = Column(String(500))
    city = Column(String(100))
    normalized_address = Column(String(500), index=True)
    city_key = Column(String(100), index=True)

    # Location
    latitude = Column(Float)
    longitude = Column(Float)

    # Property Details
    price = Column(Float, index=True)
    size = Column(Float)
    bedrooms = Column(Integer)
    bathrooms = Column(Integer)
    floor = Column(String(20))
    property_type = Column(String(50), index=True)
    description = Column(Text)
    status = Column(String(20), default='available')  # available, pending, sold

    # Origin
    source = Column(String(50), index=True)  # owned, scraper-immobiliare, scraper-idealista, ...
    url = Column(Text)
    owner_type = Column(String(20))  # agency, private
    owner_name = Column(String(200))
    owner_phone = Column(String(50))

    # Derived classification
    classification = Column(String(20), index=True)  # private, single-agency, multi-agency
    requires_manual_input = Column(Boolean, default=False)
    is_also_from_agency = Column(Boolean, default=False)
    exclusivity_hint = Column(Boolean, default=False)

    # User flags
    is_favorite = Column(Boolean, default=False)

    # Metadata
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    last_seen = Column(DateTime, default=datetime.utcnow)

    # Relationships
    agency_variants = relationship(
        "AgencyVariant",
        back_populates="listing",
        order_by="AgencyVariant.position",
        collection_class=ordering_list('position'),
        cascade="all, delete-orphan"
    )
    notifications = relationship("NotificationRecord", back_populates="listing", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint('normalized_address', 'city_key', 'price', 'size', name='uix_listing_unit'),
    )

    @property
    def location(self):
        """Location as {lat, lng} or None"""
        if self.latitude is None or self.longitude is None:
            return None
        return {'lat': self.latitude, 'lng': self.longitude}

    @location.setter
    def location(self, value):
        if value:
            self.latitude = value.get('lat')
            self.longitude = value.get('lng')
        else:
            self.latitude = None
            self.longitude = None

    def to_dict(self):
        """Convert to dictionary for API use"""
        return {
            'id': self.id,
            'address': self.address,
            'city': self.city,
            'location': self.location,
            'price': self.price,
            'size': self.size,
            'bedrooms': self.bedrooms,
            'bathrooms': self.bathrooms,
            'floor': self.floor,
            'property_type': self.property_type,
            'description': self.description,
            'status': self.status,
            'source': self.source,
            'url': self.url,
            'owner_type': self.owner_type,
            'owner_name': self.owner_name,
            'owner_phone': self.owner_phone,
            'classification': self.classification,
            'requires_manual_input': self.requires_manual_input,
            'is_also_from_agency': self.is_also_from_agency,
            'exclusivity_hint': self.exclusivity_hint,
            'is_favorite': self.is_favorite,
            'agency_variants': [v.to_dict() for v in self.agency_variants],
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'last_seen': self.last_seen.isoformat() if self.last_seen else None,
        }


class AgencyVariant(Base):
    __tablename__ = 'agency_variants'

    id = Column(Integer, primary_key=True)
    listing_id = Column(Integer, ForeignKey('listings.id'), index=True, nullable=False)
    position = Column(Integer)

    agency_name = Column(String(200))
    agency_key = Column(String(200), nullable=False)  # normalized agency name
    agency_phone = Column(String(50))
    portal_source = Column(String(50))
    external_id = Column(String(255), index=True)
    url = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    listing = relationship("Listing", back_populates="agency_variants")

    __table_args__ = (
        UniqueConstraint('listing_id', 'agency_key', 'portal_source', name='uix_variant_agency_portal'),
    )

    def to_dict(self):
        return {
            'agency_name': self.agency_name,
            'agency_phone': self.agency_phone,
            'portal_source': self.portal_source,
            'external_id': self.external_id,
            'url': self.url,
        }


class NotificationRecord(Base):
    __tablename__ = 'notification_records'

    id = Column(Integer, primary_key=True)
    buyer_id = Column(Integer, ForeignKey('clients.id'), index=True, nullable=False)
    listing_id = Column(Integer, ForeignKey('listings.id'), index=True, nullable=False)
    notified_at = Column(DateTime, default=datetime.utcnow)
    send_count = Column(Integer, default=1)

    buyer = relationship("Client", back_populates="notifications")
    listing = relationship("Listing", back_populates="notifications")

    __table_args__ = (
        UniqueConstraint('buyer_id', 'listing_id', name='uix_buyer_listing'),
    )


class DedupConflict(Base):
    __tablename__ = 'dedup_conflicts'

    id = Column(Integer, primary_key=True)
    chosen_listing_id = Column(Integer, ForeignKey('listings.id', ondelete='SET NULL'))
    candidate_ids_json = Column(Text)
    raw_address = Column(String(500))
    city = Column(String(100))
    created_at = Column(DateTime, default=datetime.utcnow)

    def get_candidate_ids(self):
        """Get candidate ids as list"""
        if self.candidate_ids_json:
            return json.loads(self.candidate_ids_json)
        return []

    def set_candidate_ids(self, ids):
        """Set candidate ids from list"""
        self.candidate_ids_json = json.dumps(list(ids))

    def to_dict(self):
        return {
            'id': self.id,
            'chosen_listing_id': self.chosen_listing_id,
            'candidate_ids': self.get_candidate_ids(),
            'raw_address': self.raw_address,
            'city': self.city,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class UnitKey(Base):
    """
    One row per normalized address and city.

    Writers read the version before looking up a canonical and bump it when
    they create one, so two writers creating near-identical units at the
    same address cannot both succeed.
    """
    __tablename__ = 'unit_keys'

    id = Column(Integer, primary_key=True)
    normalized_address = Column(String(500), nullable=False)
    city_key = Column(String(100), nullable=False)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('normalized_address', 'city_key', name='uix_unit_key'),
    )
    __mapper_args__ = {'version_id_col': version}


def _enable_sqlite_savepoints(engine):
    # pysqlite defers BEGIN; take over transaction control so SAVEPOINT works
    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def init_db(database_url, **engine_kwargs):
    """Initialize database and create all tables"""
    engine = create_engine(database_url, echo=False, **engine_kwargs)
    if engine.dialect.name == "sqlite":
        _enable_sqlite_savepoints(engine)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    return engine, SessionLocal
