"""Search-box suggestions over the synced property catalog."""

from __future__ import annotations

import re
from typing import Any, Dict, List

MIN_QUERY_LENGTH = 2
SEARCH_LIMIT = 8
MAX_PROPERTY_HITS = 5

SALE_RE = re.compile(r"\b(venta|vender|compra|comprar|sale|sell|purchase)\b")
RENT_RE = re.compile(r"\b(renta|rent|rental|alquiler|arrendamiento|lease|leased?)\b")

# English search words mapped to the Spanish type labels EasyBroker uses.
TYPE_SYNONYMS = {
    "house": "Casa",
    "apartment": "Departamento",
    "flat": "Departamento",
    "condo": "Departamento",
    "land": "Terreno",
    "lot": "Terreno",
    "plot": "Terreno",
    "office": "Oficina",
    "shop": "Local",
    "store": "Local",
    "warehouse": "Bodega",
    "villa": "Villa",
    "industrial": "Nave industrial",
    "commercial": "Local comercial",
}

PLACE_ABBREVIATIONS = (
    (re.compile(r"\bqro\b"), "Querétaro"),
    (re.compile(r"\bcdmx\b|\bdf\b"), "Ciudad de México"),
)


def _item(kind: str, label: str, value: Any = None) -> Dict[str, Any]:
    return {"type": kind, "label": label, "value": value}


def _unique_values(rows: List[Dict[str, Any]], key: str, needle: str) -> List[str]:
    seen = set()
    values = []
    for row in rows:
        value = str(row.get(key) or "").strip()
        if not value or needle not in value.lower() or value.lower() in seen:
            continue
        seen.add(value.lower())
        values.append(value)
    return values


def build_suggestions(q: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Turn catalog hits for `q` into typed suggestions.

    Order: matching properties, matching titles, property types, locations,
    then operation and type synonyms plus common place abbreviations that do
    not depend on the catalog.
    """
    needle = q.strip().lower()
    items: List[Dict[str, Any]] = []

    direct = [
        row
        for row in rows
        if needle in str(row.get("public_id") or "").lower() or needle in str(row.get("title") or "").lower()
    ]
    for row in direct[:MAX_PROPERTY_HITS]:
        items.append(_item("property", row.get("title") or f"Propiedad {row.get('public_id')}", row.get("public_id")))
    for row in rows:
        if row.get("title") and needle in row["title"].lower():
            items.append(_item("title", row["title"], row.get("public_id")))
    items.extend(_item("type", value, value) for value in _unique_values(rows, "property_type", needle))
    items.extend(_item("location", value, value) for value in _unique_values(rows, "location_text", needle))

    if SALE_RE.search(needle):
        items.append(_item("operation", "Venta", "sale"))
    if RENT_RE.search(needle):
        items.append(_item("operation", "Renta", "rental"))

    added = set()
    for word in re.split(r"[^a-z0-9ñ]+", needle):
        label = TYPE_SYNONYMS.get(word)
        if label and label not in added:
            added.add(label)
            items.append(_item("type", label, label))

    for pattern, place in PLACE_ABBREVIATIONS:
        if pattern.search(needle):
            items.append(_item("location", place, place))
    return items


def suggest(q: str, store: Any) -> List[Dict[str, Any]]:
    term = (q or "").strip()
    if len(term) < MIN_QUERY_LENGTH:
        return []
    return build_suggestions(term, store.search_properties(term, limit=SEARCH_LIMIT))
