"""Import of third-party (Ticketmaster) listings shown as affiliate events."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import bleach
import requests
from sqlalchemy.orm import Session

from boxoffice.config import Config
from boxoffice.database import ensure_utc, utcnow
from boxoffice.models import AffiliateEvent

logger = logging.getLogger(__name__)

TICKETMASTER = "ticketmaster"
FORWARDED_PARAMS = (
    "size",
    "sort",
    "city",
    "stateCode",
    "keyword",
    "startDateTime",
    "endDateTime",
    "radius",
    "unit",
    "classificationName",
    "page",
)


class AffiliateImportError(Exception):
    pass


def _discovery_timestamp(value: Optional[datetime] = None) -> str:
    # Discovery wants "YYYY-MM-DDTHH:MM:SS" with no zone suffix.
    value = ensure_utc(value) if value else datetime.now(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S")


def _parse_start(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def transform_ticketmaster_event(event: Dict[str, Any]) -> Dict[str, Any]:
    venues = (event.get("_embedded") or {}).get("venues") or []
    venue = venues[0] if venues else {}
    images = event.get("images") or []
    image = next((img for img in images if (img.get("width") or 0) >= 500), images[0] if images else None)
    price_ranges = event.get("priceRanges") or []
    price = price_ranges[0] if price_ranges else {}
    start = ((event.get("dates") or {}).get("start")) or {}
    info = event.get("info")
    return {
        "platform": TICKETMASTER,
        "externalEventId": str(event.get("id")),
        "name": event.get("name") or "Untitled event",
        "description": bleach.clean(info, tags=[], strip=True) if info else None,
        "imageUrl": image.get("url") if image else None,
        "startDate": start.get("dateTime") or start.get("localDate") or "",
        "venueName": venue.get("name") or "TBA",
        "venueCity": (venue.get("city") or {}).get("name") or "",
        "venueState": (venue.get("state") or {}).get("stateCode"),
        "venueCountry": (venue.get("country") or {}).get("countryCode") or "US",
        "minPrice": price.get("min"),
        "maxPrice": price.get("max"),
        "currency": price.get("currency") or "USD",
        "affiliateUrl": event.get("url"),
    }


class AffiliateImportService:
    def __init__(self, db_session: Session, api_key: Optional[str] = None, base_url: Optional[str] = None) -> None:
        self.db = db_session
        self.api_key = api_key if api_key is not None else Config.TICKETMASTER_API_KEY
        self.base_url = (base_url or Config.TICKETMASTER_API_URL).rstrip("/")

    def search_ticketmaster(self, params: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_key:
            raise AffiliateImportError("Ticketmaster API key is required")
        query = {"apikey": self.api_key}
        for key in FORWARDED_PARAMS:
            if params.get(key) not in (None, ""):
                query[key] = params[key]
        try:
            response = requests.get(
                f"{self.base_url}/events.json",
                params=query,
                timeout=Config.EXTERNAL_API_TIMEOUT,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Ticketmaster request failed", extra={"error": str(exc)})
            raise AffiliateImportError(f"Ticketmaster API error: {exc}") from exc
        return response.json()

    def import_ticketmaster_events(self, promoter_id: int, options: Optional[Dict[str, Any]] = None) -> Tuple[bool, str, List[AffiliateEvent]]:
        options = options or {}
        params = {
            "keyword": options.get("keyword"),
            "city": options.get("city"),
            "stateCode": options.get("stateCode"),
            "classificationName": options.get("classificationName"),
            "radius": options.get("radius") or 50,
            "unit": "miles",
            "startDateTime": options.get("startDateTime") or _discovery_timestamp(),
            "endDateTime": options.get("endDateTime"),
            "size": options.get("maxResults") or 50,
            "sort": "date,asc",
        }
        try:
            payload = self.search_ticketmaster(params)
        except AffiliateImportError as exc:
            return False, str(exc), []

        events = (payload.get("_embedded") or {}).get("events") or []
        saved = self.save_events(promoter_id, [transform_ticketmaster_event(event) for event in events])
        logger.info("Imported Ticketmaster events", extra={"promoter": promoter_id, "count": len(saved)})
        return True, f"Imported {len(saved)} events", saved

    def save_events(self, promoter_id: int, transformed: List[Dict[str, Any]]) -> List[AffiliateEvent]:
        """Upsert on (promoter, platform, external id)."""
        saved: List[AffiliateEvent] = []
        for data in transformed:
            row = (
                self.db.query(AffiliateEvent)
                .filter_by(promoterID=promoter_id, platform=data["platform"], external_event_id=data["externalEventId"])
                .first()
            )
            if row is None:
                row = AffiliateEvent(
                    promoterID=promoter_id,
                    platform=data["platform"],
                    external_event_id=data["externalEventId"],
                    clicks=0,
                )
                self.db.add(row)
            row.name = data["name"]
            row.description = data["description"]
            row.image_url = data["imageUrl"]
            row.start_at = _parse_start(data["startDate"])
            row.venue_name = data["venueName"]
            row.venue_city = data["venueCity"]
            row.venue_state = data["venueState"]
            row.venue_country = data["venueCountry"]
            row.min_price = data["minPrice"]
            row.max_price = data["maxPrice"]
            row.currency = data["currency"]
            row.affiliate_url = data["affiliateUrl"]
            row.is_active = True
            saved.append(row)
        self.db.commit()
        return saved

    def list_events(self, promoter_id: int) -> List[AffiliateEvent]:
        return (
            self.db.query(AffiliateEvent)
            .filter(AffiliateEvent.promoterID == promoter_id)
            .filter(AffiliateEvent.is_active.is_(True))
            .order_by(AffiliateEvent.start_at)
            .all()
        )

    def record_click(self, affiliate_event_id: int) -> Optional[AffiliateEvent]:
        row = self.db.get(AffiliateEvent, affiliate_event_id)
        if row is None:
            return None
        row.clicks = (row.clicks or 0) + 1
        self.db.commit()
        return row

    def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        expired = 0
        for row in self.db.query(AffiliateEvent).filter(AffiliateEvent.is_active.is_(True)).all():
            if row.start_at is not None and ensure_utc(row.start_at) < now:
                row.is_active = False
                expired += 1
        self.db.commit()
        return expired
