from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from telemetry.logging_utils import get_logger

logger = get_logger(__name__)


class EasyBrokerProperty(BaseModel):
    public_id: str
    title: Optional[str] = None
    title_image_full: Optional[str] = None
    title_image_thumb: Optional[str] = None
    property_type: Optional[str] = None
    status: Optional[str] = None
    bedrooms: Optional[float] = None
    bathrooms: Optional[float] = None
    parking_spaces: Optional[float] = None
    lot_size: Optional[float] = None
    construction_size: Optional[float] = None
    location: Union[str, Dict[str, Any], None] = None
    operations: List[Dict[str, Any]] = Field(default_factory=list)

    model_config = {"extra": "allow"}


def validate_properties(raw: List[Any]) -> List[Dict[str, Any]]:
    """Keep the listing entries that carry a `public_id`, logging the rest."""
    cleaned: List[Dict[str, Any]] = []
    for entry in raw:
        try:
            cleaned.append(EasyBrokerProperty.model_validate(entry).model_dump())
        except ValidationError as exc:
            logger.warning("property_validation_failed", extra={"error": str(exc)[:200]})
    return cleaned


def location_text(location: Any) -> str:
    if isinstance(location, str):
        return location
    if not isinstance(location, dict):
        return ""
    parts = [
        location.get("name"),
        location.get("neighborhood"),
        location.get("municipality") or location.get("delegation"),
        location.get("city"),
        location.get("state"),
        location.get("country"),
    ]
    return ", ".join(str(p) for p in parts if p)


def build_property_record(listing: Dict[str, Any], detail: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Merge a listing entry with its detail payload; detail values win."""
    detail = detail or {}

    def pick(key: str) -> Any:
        value = detail.get(key)
        return value if value is not None else listing.get(key)

    images = detail.get("property_images")
    if not isinstance(images, list):
        images = detail.get("images") if isinstance(detail.get("images"), list) else []
    return {
        "public_id": listing["public_id"],
        "title": pick("title"),
        "description": detail.get("description"),
        "title_image_full": pick("title_image_full"),
        "title_image_thumb": pick("title_image_thumb"),
        "property_type": pick("property_type"),
        "status": pick("status"),
        "bedrooms": pick("bedrooms"),
        "bathrooms": pick("bathrooms"),
        "parking_spaces": pick("parking_spaces"),
        "lot_size": detail.get("lot_size"),
        "construction_size": detail.get("construction_size"),
        "broker_name": (detail.get("broker") or {}).get("name") if isinstance(detail.get("broker"), dict) else None,
        "location_text": location_text(pick("location")),
        "operations": pick("operations") or [],
        "images": images,
        "detail_json": json.dumps(detail, ensure_ascii=False) if detail else None,
        "updated_at": datetime.now(timezone.utc).isoformat(),
    }


def _normalized_operations(record: Dict[str, Any]) -> List[Dict[str, Any]]:
    operations: Any = None
    detail = record.get("detail_json")
    if isinstance(detail, str) and detail:
        try:
            operations = (json.loads(detail) or {}).get("operations")
        except (json.JSONDecodeError, AttributeError):
            operations = None
    if not isinstance(operations, list) or not operations:
        operations = record.get("operations")
    normalized = []
    for op in operations if isinstance(operations, list) else []:
        if not isinstance(op, dict):
            continue
        prices = op.get("prices") if isinstance(op.get("prices"), list) else []
        first = prices[0] if prices and isinstance(prices[0], dict) else {}
        amount = op.get("amount") if isinstance(op.get("amount"), (int, float)) else first.get("amount")
        currency = str(op.get("currency") or first.get("currency") or "MXN").upper()
        formatted = op.get("formatted_amount") or first.get("formatted_amount")
        if formatted is None and isinstance(amount, (int, float)) and not isinstance(amount, bool):
            formatted = f"${amount:,.0f}" if currency == "MXN" else f"{currency} {amount:,.0f}"
        normalized.append(
            {"type": op.get("type"), "prices": [{"amount": amount, "currency": currency, "formatted_amount": formatted}]}
        )
    return normalized


def to_listing_item(record: Dict[str, Any], placeholder_image: Optional[str] = None) -> Dict[str, Any]:
    """Shape a stored property like an EasyBroker listing entry."""
    return {
        "public_id": record.get("public_id"),
        "title": record.get("title"),
        "title_image_full": record.get("title_image_full") or placeholder_image,
        "title_image_thumb": record.get("title_image_thumb") or placeholder_image,
        "location": record.get("location_text"),
        "property_type": record.get("property_type"),
        "status": record.get("status"),
        "bedrooms": record.get("bedrooms"),
        "bathrooms": record.get("bathrooms"),
        "parking_spaces": record.get("parking_spaces"),
        "operations": _normalized_operations(record),
        "lot_size": record.get("lot_size"),
        "construction_size": record.get("construction_size"),
    }
