"""Catalog filters translated into EasyBroker query parameters."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field

NUMERIC_FIELDS = (
    "min_price",
    "max_price",
    "min_bedrooms",
    "min_bathrooms",
    "min_parking_spaces",
    "min_construction_size",
    "max_construction_size",
    "min_lot_size",
    "max_lot_size",
)


class PropertyFilters(BaseModel):
    operation_type: Optional[str] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    min_bedrooms: Optional[float] = None
    min_bathrooms: Optional[float] = None
    min_parking_spaces: Optional[float] = None
    min_construction_size: Optional[float] = None
    max_construction_size: Optional[float] = None
    min_lot_size: Optional[float] = None
    max_lot_size: Optional[float] = None
    updated_after: Optional[str] = None
    updated_before: Optional[str] = None
    statuses: List[str] = Field(default_factory=list)
    property_types: List[str] = Field(default_factory=list)
    features: List[str] = Field(default_factory=list)
    locations: List[str] = Field(default_factory=list)
    q: Optional[str] = None


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        values: Iterable[Any] = value
    else:
        values = str(value).split(",")
    return [str(v).strip() for v in values if str(v).strip()]


def _as_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip())
    except ValueError:
        return None
    return number if number == number and number not in (float("inf"), float("-inf")) else None


def _as_iso_date(value: Any) -> Optional[str]:
    text = str(value or "").strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10]).isoformat()
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        return None


def _first(query: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in query and query[key] not in (None, ""):
            return query[key]
    return None


def parse_filters(query: Mapping[str, Any]) -> PropertyFilters:
    """Lenient parse: unknown operations, bad numbers and bad dates are dropped."""
    operation = str(query.get("operation_type") or "").strip().lower()
    raw_q = query.get("q")
    data = {
        "operation_type": operation if operation in {"sale", "rental"} else None,
        "updated_after": _as_iso_date(query.get("updated_after")),
        "updated_before": _as_iso_date(query.get("updated_before")),
        "statuses": _as_list(_first(query, "search[statuses][]", "search[statuses]", "statuses")),
        "property_types": _as_list(_first(query, "search[property_types][]", "search[property_types]", "property_types")),
        "features": _as_list(_first(query, "features[]", "features")),
        "locations": _as_list(_first(query, "locations[]", "locations")),
        "q": raw_q.strip() or None if isinstance(raw_q, str) else None,
    }
    for name in NUMERIC_FIELDS:
        data[name] = _as_number(query.get(name))
    return PropertyFilters(**data)


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def build_query_params(filters: PropertyFilters) -> List[Tuple[str, str]]:
    params: List[Tuple[str, str]] = []
    if filters.operation_type:
        params.append(("operation_type", filters.operation_type))
    for name in NUMERIC_FIELDS:
        value = getattr(filters, name)
        if value is not None:
            params.append((name, _format_number(value)))
    if filters.updated_after:
        params.append(("updated_after", filters.updated_after))
    if filters.updated_before:
        params.append(("updated_before", filters.updated_before))
    params.extend(("search[statuses][]", s) for s in filters.statuses)
    params.extend(("search[property_types][]", t) for t in filters.property_types)
    params.extend(("features[]", f) for f in filters.features)
    params.extend(("locations[]", loc) for loc in filters.locations)
    if filters.q:
        params.append(("q", filters.q))
    return params


def _operation_amount(operation: Any) -> Optional[float]:
    if not isinstance(operation, dict):
        return None
    amount = operation.get("amount")
    if amount is None and isinstance(operation.get("prices"), list) and operation["prices"]:
        first = operation["prices"][0]
        amount = first.get("amount") if isinstance(first, dict) else None
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        return None
    return float(amount)


def has_price_in_range(operations: Optional[List[Any]], min_price: Optional[float] = None, max_price: Optional[float] = None) -> bool:
    if not min_price and not max_price:
        return True
    for operation in operations or []:
        amount = _operation_amount(operation)
        if amount is None:
            continue
        if min_price is not None and amount < min_price:
            continue
        if max_price is not None and amount > max_price:
            continue
        return True
    return False


def has_features(blob: Optional[str], features: Optional[List[str]] = None) -> bool:
    if not features:
        return True
    text = (blob or "").lower()
    return all(feature.lower() in text for feature in features)


def matches_filters(item: Any, filters: PropertyFilters) -> bool:
    """Post-filter for aggregated listings; entries without a `features` list skip that check."""
    if not isinstance(item, dict):
        return False
    if not has_price_in_range(item.get("operations"), filters.min_price, filters.max_price):
        return False
    features = item.get("features")
    if isinstance(features, list) and not has_features(" ".join(str(f) for f in features), filters.features):
        return False
    return True
