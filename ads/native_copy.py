"""
Heuristic Spanish ad copy for listings, no LLM involved.

Copy is assembled from the property record (type, place, rooms, operation and
price) plus keywords pulled from a free-text base description, and every field
is cut to Meta's headline/description/primary-text limits.
"""

from __future__ import annotations

import json
import re
import unicodedata
from collections import Counter
from typing import Any, Dict, List, Optional, Tuple

MAX_HEADLINE = 40
MAX_DESCRIPTION = 60
MAX_PRIMARY = 125
DEFAULT_PLACE = "Querétaro"

STOPWORDS = {
    "de", "la", "el", "en", "y", "a", "con", "para", "por", "del", "las", "los", "un", "una",
    "unos", "unas", "es", "que", "se", "su", "sus", "tu", "tus", "mi", "mis", "al", "o", "u",
    "lo", "si", "mas", "menos", "muy", "ya", "no", "le", "les", "te", "me", "como", "sobre",
    "sin", "entre", "hasta", "desde", "donde", "cuando", "cual", "cuales", "esto", "esta",
    "estos", "estas", "eso", "esa", "esos", "esas", "aqui", "alli", "alla", "ademas",
    "tambien", "pero", "porque", "pues", "solo", "todo", "toda", "todos", "todas", "otro",
    "otra", "otros", "otras",
}

# (pattern, emoji); the first block picks exactly one emoji for the property type.
TYPE_EMOJIS = [
    (re.compile(r"casa|residen|hogar|vivienda"), "🏡"),
    (re.compile(r"departa|depa|loft|ph|penthouse"), "🏢"),
    (re.compile(r"terreno|lote|parcel"), "🏞️"),
]
HOOK_EMOJIS = [
    (re.compile(r"lujo|premium|exclusiv|moderno|nuevo|estrenar"), "✨"),
    (re.compile(r"familia|amplio|espacioso|jardin|patio"), "👨‍👩‍👧‍👦"),
    (re.compile(r"amenidad|alberca|gimnasio|seguridad"), "⭐"),
    (None, "📍"),
    (re.compile(r"inversion|plusvalia"), "💼"),
    (re.compile(r"precio|oferta|oportunidad"), "💰"),
]


def normalize(text: Any) -> str:
    """Lowercase and strip accents."""
    decomposed = unicodedata.normalize("NFD", str(text or ""))
    return "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn").lower().strip()


def limit_text(text: Any, maximum: int) -> str:
    """Collapse whitespace; if still too long, cut to `maximum - 1` and append an ellipsis."""
    clean = re.sub(r"\s+", " ", str(text or "")).strip()
    if len(clean) <= maximum:
        return clean
    return clean[: maximum - 1].rstrip() + "…"


def strip_html(text: Any) -> str:
    return re.sub(r"\s+", " ", re.sub(r"<[^>]+>", " ", str(text or ""))).strip()


def extract_keywords(text: str, limit: int = 8) -> List[str]:
    tokens = [t for t in re.split(r"[^a-z0-9ñ]+", normalize(text)) if len(t) > 2 and t not in STOPWORDS]
    return [word for word, _ in Counter(tokens).most_common(limit)]


def pick_emojis(base_text: str, prop: Optional[Dict[str, Any]] = None) -> List[str]:
    prop = prop or {}
    keywords = extract_keywords(f"{base_text} {prop.get('title') or ''} {prop.get('property_type') or ''}")
    base_norm = normalize(base_text)

    def has(pattern: re.Pattern) -> bool:
        return any(pattern.search(word) for word in keywords) or bool(pattern.search(base_norm))

    out = [next((emoji for pattern, emoji in TYPE_EMOJIS if has(pattern)), "✨")]
    for pattern, emoji in HOOK_EMOJIS:
        if pattern is None or has(pattern):
            if emoji not in out:
                out.append(emoji)
    return out[:3]


def short_place(location_text: Optional[str]) -> Optional[str]:
    if not location_text:
        return None
    parts = [part.strip() for part in str(location_text).split(",") if part.strip()]
    return parts[-1] if parts else str(location_text)


def format_price(amount: float, currency: Optional[str] = None) -> str:
    currency = (currency or "MXN").upper()
    formatted = f"{amount:,.0f}"
    return f"${formatted}" if currency == "MXN" else f"{currency} {formatted}"


def _property_operations(prop: Dict[str, Any]) -> List[Dict[str, Any]]:
    detail = prop.get("detail_json")
    if isinstance(detail, str) and detail:
        try:
            detail = json.loads(detail)
        except json.JSONDecodeError:
            detail = None
    if isinstance(detail, dict) and isinstance(detail.get("operations"), list):
        return [op for op in detail["operations"] if isinstance(op, dict)]
    operations = prop.get("operations")
    if isinstance(operations, str):
        try:
            operations = json.loads(operations)
        except json.JSONDecodeError:
            operations = None
    return [op for op in operations if isinstance(op, dict)] if isinstance(operations, list) else []


def pick_operation(prop: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    """Return ("Venta" | "Renta" | None, formatted price | None); sale wins over rental."""
    operations = _property_operations(prop)
    if not operations:
        return None, None
    sale = next((op for op in operations if op.get("type") == "sale"), None)
    rental = next((op for op in operations if op.get("type") == "rental"), None)
    chosen = sale or rental or operations[0]
    label = "Venta" if sale else ("Renta" if rental else None)
    if chosen.get("formatted_amount"):
        return label, str(chosen["formatted_amount"])
    amount = chosen.get("amount")
    if isinstance(amount, (int, float)) and not isinstance(amount, bool):
        return label, format_price(amount, chosen.get("currency"))
    return label, None


def property_type_label(property_type: Optional[str]) -> str:
    norm = normalize(property_type)
    if "casa" in norm:
        return "Casa"
    if "depart" in norm:
        return "Departamento"
    if re.search(r"terreno|lote|parcel", norm):
        return "Terreno"
    return "Propiedad"


def _number_text(value: Any) -> str:
    number = float(value)
    return str(int(number)) if number.is_integer() else str(number)


def generate_native_copy(base_description: str, prop: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
    prop = prop or {}
    base = str(base_description or "").strip()
    place = short_place(prop.get("location_text")) or DEFAULT_PLACE
    operation, price = pick_operation(prop)
    emojis = pick_emojis(base, prop)
    type_text = property_type_label(prop.get("property_type"))

    headline = limit_text(f"{emojis[0]} {type_text} en {place}", MAX_HEADLINE)

    bits = [f"📍 {place}"]
    if prop.get("bedrooms"):
        bits.append(f"🛏️ {_number_text(prop['bedrooms'])} rec.")
    if prop.get("bathrooms"):
        bits.append(f"🛁 {round(float(prop['bathrooms']))} baños")
    if prop.get("parking_spaces"):
        bits.append(f"🚗 {_number_text(prop['parking_spaces'])} est.")
    if not (prop.get("bedrooms") or prop.get("bathrooms") or prop.get("parking_spaces")):
        keywords = extract_keywords(base, 6)
        if keywords:
            bits.append(f"⭐ {keywords[0].capitalize()}")
    if operation:
        bits.append(operation)
    if price:
        bits.append(price)
    description = limit_text(" · ".join(bits), MAX_DESCRIPTION)

    hook = base or prop.get("title") or f"{type_text} en {place}"
    op_part = f"{operation} · " if operation else ""
    price_part = f"{price} · " if price else ""
    primary_text = limit_text(f"{' '.join(emojis)} {hook}. {op_part}{price_part}Agenda tu visita hoy.", MAX_PRIMARY)

    return {"headline": headline, "description": description, "primary_text": primary_text}


def generate_native_carousel(base_description: Optional[str], properties: List[Dict[str, Any]]) -> Dict[str, Any]:
    base = (base_description or "").strip()
    message_base = base or f"Descubre {len(properties)} opciones en {DEFAULT_PLACE}"
    copies = [
        {"id": prop.get("public_id"), **generate_native_copy(base or (prop.get("title") or ""), prop)}
        for prop in properties
    ]
    return {"message": limit_text(f"✨ {message_base}", MAX_PRIMARY), "copies": copies}
