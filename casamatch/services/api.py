from fastapi import FastAPI, HTTPException, Depends
from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy.orm import Session
from casamatch.core.database import BuyerPreference, Client, DedupConflict, Listing, init_db
from casamatch.core.config import settings
from casamatch.core.exceptions import MalformedGeometryError
from casamatch.core.listing_processor import ListingProcessor
from casamatch.core.match_engine import MatchEngine, ORDERINGS
from casamatch.services.notification_tracker import NotificationTracker
from casamatch.utils.criteria_matcher import ANY_PROPERTY_TYPE, PROPERTY_TYPES, normalize_property_type
from casamatch.utils.geo_filter import parse_search_area
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(title="CasaMatch")

# Database
engine, SessionLocal = init_db(settings.database_url)


def get_db():
    """Dependency to get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


class PreferenceIn(BaseModel):
    min_price: Optional[int] = Field(default=None, ge=0)
    max_price: Optional[int] = Field(default=None, ge=0)
    min_size: Optional[int] = Field(default=None, gt=0)
    max_size: Optional[int] = Field(default=None, gt=0)
    min_rooms: Optional[int] = Field(default=None, ge=0)
    property_type: Optional[str] = None
    search_area: Optional[Dict[str, Any]] = None

    @field_validator('property_type')
    @classmethod
    def check_property_type(cls, value):
        normalized = normalize_property_type(value)
        if normalized in ANY_PROPERTY_TYPE:
            return None
        if normalized not in PROPERTY_TYPES:
            raise ValueError(f"Unknown property type '{value}'")
        return normalized

    @field_validator('search_area')
    @classmethod
    def check_search_area(cls, value):
        if not value:
            return None
        try:
            parse_search_area(value, settings.default_search_radius_meters)
        except MalformedGeometryError as e:
            raise ValueError(str(e))
        return value

    @model_validator(mode='after')
    def check_ranges(self):
        if self.min_price is not None and self.max_price is not None and self.min_price > self.max_price:
            raise ValueError("min_price must not exceed max_price")
        if self.min_size is not None and self.max_size is not None and self.min_size > self.max_size:
            raise ValueError("min_size must not exceed max_size")
        return self


def _get_listing(db: Session, listing_id: int) -> Listing:
    listing = db.query(Listing).filter(Listing.id == listing_id).first()
    if not listing:
        raise HTTPException(status_code=404, detail="Listing not found")
    return listing


def _get_client(db: Session, client_id: int) -> Client:
    client = db.query(Client).filter(Client.id == client_id).first()
    if not client:
        raise HTTPException(status_code=404, detail="Client not found")
    return client


@app.get("/health")
async def health_check(db: Session = Depends(get_db)):
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "listings": db.query(Listing).count(),
        "buyers": db.query(Client).filter(Client.type.in_(('buyer', 'both'))).count()
    }


@app.post("/api/listings/import")
async def import_listings(payloads: List[Dict[str, Any]], db: Session = Depends(get_db)):
    """Ingest raw portal payloads"""
    processor = ListingProcessor(db)
    stats = processor.process_listings(payloads)
    return {"success": True, "stats": stats}


@app.get("/api/listings/{listing_id}")
async def get_listing(listing_id: int, db: Session = Depends(get_db)):
    """Listing with classification and agency variants"""
    return _get_listing(db, listing_id).to_dict()


@app.post("/api/listings/{listing_id}/favorite")
async def toggle_favorite(listing_id: int, db: Session = Depends(get_db)):
    """Toggle the favorite flag of a listing"""
    listing = _get_listing(db, listing_id)
    listing.is_favorite = not listing.is_favorite
    db.commit()

    logger.info(f"[API] Toggled favorite, listing_id: {listing_id}, is_favorite: {listing.is_favorite}")
    return {"success": True, "is_favorite": listing.is_favorite}


@app.delete("/api/listings/{listing_id}")
async def delete_listing(listing_id: int, db: Session = Depends(get_db)):
    """Delete a listing with its agency variants and notification records"""
    listing = _get_listing(db, listing_id)
    db.delete(listing)
    db.commit()

    logger.info(f"[API] Deleted listing, listing_id: {listing_id}")
    return {"success": True}


@app.get("/api/listings/{listing_id}/buyers")
async def get_buyers_for_listing(listing_id: int, db: Session = Depends(get_db)):
    """Buyers whose preference the listing satisfies"""
    listing = _get_listing(db, listing_id)
    buyers = MatchEngine(db).find_buyers_for_listing(listing)
    return {
        "listing_id": listing_id,
        "buyers": [
            {"id": b.id, "name": b.full_name, "phone": b.phone}
            for b in buyers
        ]
    }


@app.put("/api/buyers/{client_id}/preference")
async def put_preference(client_id: int, preference: PreferenceIn, db: Session = Depends(get_db)):
    """Create or replace a buyer's preference"""
    client = _get_client(db, client_id)
    if not client.is_buyer:
        raise HTTPException(status_code=400, detail="Client is not a buyer")

    pref = client.preference
    if pref is None:
        pref = BuyerPreference(client_id=client.id)
        db.add(pref)

    pref.min_price = preference.min_price
    pref.max_price = preference.max_price
    pref.min_size = preference.min_size
    pref.max_size = preference.max_size
    pref.min_rooms = preference.min_rooms
    pref.property_type = preference.property_type
    pref.search_area = preference.search_area
    db.commit()

    logger.info(f"[API] Stored buyer preference, client_id: {client_id}")
    return pref.to_dict()


@app.get("/api/buyers/{client_id}/matches")
async def get_matches(client_id: int, order_by: str = "newest", db: Session = Depends(get_db)):
    """Listings matching a buyer's preference"""
    if order_by not in ORDERINGS:
        raise HTTPException(status_code=400, detail="Invalid order_by")
    _get_client(db, client_id)

    match_engine = MatchEngine(db)
    matches = match_engine.find_matches(client_id, order_by=order_by)
    pref = db.query(BuyerPreference).filter(BuyerPreference.client_id == client_id).first()

    return {
        "buyer_id": client_id,
        "order_by": order_by,
        "matches": [
            {**listing.to_dict(), "match_percentage": match_engine.match_percentage(listing, pref)}
            for listing in matches
        ]
    }


@app.get("/api/buyers/{client_id}/pending")
async def get_pending(client_id: int, resend: bool = False, db: Session = Depends(get_db)):
    """Matched listings not yet sent to the buyer"""
    _get_client(db, client_id)

    matches = MatchEngine(db).find_matches(client_id)
    pending = NotificationTracker(db).pending_for_buyer(client_id, matches, resend=resend)
    return {
        "buyer_id": client_id,
        "pending": [listing.to_dict() for listing in pending]
    }


@app.post("/api/buyers/{client_id}/notifications/{listing_id}")
async def record_notification(client_id: int, listing_id: int, db: Session = Depends(get_db)):
    """Record that a listing was sent to a buyer"""
    _get_client(db, client_id)
    _get_listing(db, listing_id)

    record = NotificationTracker(db).record_sent(client_id, listing_id)
    db.commit()

    return {
        "buyer_id": client_id,
        "listing_id": listing_id,
        "notified_at": record.notified_at.isoformat(),
        "send_count": record.send_count
    }


@app.get("/api/dedup/conflicts")
async def get_dedup_conflicts(db: Session = Depends(get_db)):
    """Ambiguous duplicates flagged for manual review"""
    conflicts = db.query(DedupConflict).order_by(DedupConflict.created_at.desc()).all()
    return {"conflicts": [c.to_dict() for c in conflicts]}
