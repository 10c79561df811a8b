from __future__ import annotations

import json
import os
import time
from typing import Any, Dict, List, Literal, Optional, Tuple

from dotenv import load_dotenv
from openai import OpenAI, OpenAIError
from pydantic import BaseModel, Field

from telemetry.logging_utils import get_logger
from telemetry.metrics import log_metric, timed_operation

from .native_copy import (
    DEFAULT_PLACE,
    MAX_DESCRIPTION,
    MAX_HEADLINE,
    MAX_PRIMARY,
    extract_keywords,
    generate_native_carousel,
    generate_native_copy,
    limit_text,
    pick_operation,
    property_type_label,
    short_place,
    strip_html,
)

load_dotenv()
logger = get_logger(__name__)

OPENAI_AD_MODEL = os.getenv("OPENAI_AD_MODEL", "gpt-4o-mini")
OPENAI_TIMEOUT = float(os.getenv("OPENAI_TIMEOUT", "30"))
VARIANTS_PER_PROPERTY = 5
DESCRIPTION_MAX_CHARS = 1200

SYSTEM_PROMPTS = {
    "es": (
        "Eres un copywriter para anuncios de Meta (Facebook/Instagram). Escribe en español neutro. "
        "Cumple prácticas: lenguaje claro, CTA breve, sin claims engañosos, evita MAYÚSCULAS excesivas. "
        "No agregues datos que no estén en la descripción. Responde SOLO en JSON."
    ),
    "en": (
        "You are a copywriter for Meta (Facebook/Instagram) ads. Write in neutral English. "
        "Follow best practices: clear language, short CTA, no misleading claims, avoid excessive ALL CAPS. "
        "Do not add facts not present in the description. Reply ONLY with JSON."
    ),
}
INSTRUCTIONS = {
    "es": "Genera exactamente 5 variantes (title, description) por propiedad, SOLO en base a su descripción. CTA breve.",
    "en": "Generate exactly 5 variants (title, description) per property, ONLY based on its description. Short CTA.",
}
CTAS = {
    "es": ["Agenda tu visita", "Conoce más", "Solicita informes", "Visítala hoy", "Pide más detalles"],
    "en": ["Book a visit", "Learn more", "Ask for details", "Visit today", "Get more info"],
}
SUGGEST_COPY_PROMPT = (
    "Eres un copywriter para anuncios de Facebook/Instagram en español neutral. Responde SOLO en JSON. "
    "Titular <= 40, Descripción <= 60, PrimaryText <= 125. Incluye SIEMPRE: tipo de operación (Venta/Renta), "
    "el precio y la mención de que es en Querétaro (si ya aparece en la ubicación, manténlo). "
    "Enfatiza valor y ubicación, tono cordial, sin claims exagerados. Sin emojis."
)


class AdIdeasRequest(BaseModel):
    mode: Literal["single", "carousel"]
    property_ids: List[str] = Field(alias="propertyIds", min_length=1)
    locale: Literal["es", "en"] = "es"
    model: Literal["gpt-4o-mini", "gpt-4.1-mini"] = "gpt-4o-mini"
    temperature: float = 0.7
    top_p: float = 1.0

    model_config = {"populate_by_name": True}


class NoDescriptionsError(ValueError):
    def __init__(self, missing: List[str]) -> None:
        super().__init__("No descriptions available")
        self.missing = missing


def get_openai_client() -> Optional[OpenAI]:
    """Return an OpenAI client when a key is configured; callers fall back to native copy otherwise."""
    if not os.getenv("OPENAI_API_KEY"):
        return None
    return OpenAI(timeout=OPENAI_TIMEOUT)


def extract_usage_tokens(response: Any) -> Tuple[Optional[int], Optional[int]]:
    usage = getattr(response, "usage", None)
    if usage is None:
        return None, None
    return getattr(usage, "prompt_tokens", None), getattr(usage, "completion_tokens", None)


def first_sentence(text: Optional[str]) -> Optional[str]:
    clean = strip_html(text)
    if not clean:
        return None
    for idx, ch in enumerate(clean[:200]):
        if ch in ".!?" and idx >= 10:
            return clean[: idx + 1]
    return clean[:180].strip()


def normalize_variants(raw: Any) -> List[Dict[str, str]]:
    """Keep complete variants within the length limits, padded to exactly five with the last one."""
    variants: List[Dict[str, str]] = []
    for entry in raw if isinstance(raw, list) else []:
        if not isinstance(entry, dict):
            continue
        title = limit_text(entry.get("title"), MAX_HEADLINE)
        description = limit_text(entry.get("description"), MAX_DESCRIPTION)
        if title and description:
            variants.append({"title": title, "description": description})
    variants = variants[:VARIANTS_PER_PROPERTY]
    while variants and len(variants) < VARIANTS_PER_PROPERTY:
        variants.append(dict(variants[-1]))
    return variants


def parse_ad_ideas(content: Optional[str], requested_ids: List[str]) -> List[Dict[str, Any]]:
    try:
        parsed = json.loads(content or "")
    except json.JSONDecodeError:
        return []
    raw_items = parsed.get("items") if isinstance(parsed, dict) else None
    order = {pid: idx for idx, pid in enumerate(requested_ids)}
    items: List[Dict[str, Any]] = []
    for entry in raw_items if isinstance(raw_items, list) else []:
        if not isinstance(entry, dict):
            continue
        item_id = str(entry.get("id") or "")
        if item_id not in order:
            continue
        variants = normalize_variants(entry.get("variants"))
        if len(variants) == VARIANTS_PER_PROPERTY:
            items.append({"id": item_id, "variants": variants})
    items.sort(key=lambda item: order[item["id"]])
    return items


def native_variants(description: str, prop: Optional[Dict[str, Any]], locale: str = "es") -> List[Dict[str, str]]:
    prop = prop or {}
    copy = generate_native_copy(description, prop)
    place = short_place(prop.get("location_text")) or DEFAULT_PLACE
    type_text = property_type_label(prop.get("property_type"))
    operation, _ = pick_operation(prop)
    keywords = extract_keywords(description, 3)
    titles = [
        copy["headline"],
        first_sentence(description) or prop.get("title") or "",
        f"{type_text} en {place}",
        f"{operation or type_text} · {place}",
        f"{keywords[0].capitalize()} en {place}" if keywords else "",
    ]
    titles = [limit_text(title, MAX_HEADLINE) for title in titles if title]
    variants = []
    for idx, cta in enumerate(CTAS.get(locale, CTAS["es"])):
        title = titles[idx] if idx < len(titles) else titles[-1]
        variants.append({"title": title, "description": limit_text(f"{cta} · {copy['description']}", MAX_DESCRIPTION)})
    return variants


def _openai_ad_ideas(
    client: OpenAI,
    request: AdIdeasRequest,
    available: List[Dict[str, str]],
) -> Tuple[List[Dict[str, Any]], Any]:
    user_payload = {
        "mode": request.mode,
        "locale": request.locale,
        "rules": {
            "titleMax": MAX_HEADLINE,
            "descriptionMax": MAX_DESCRIPTION,
            "variantsPerProperty": VARIANTS_PER_PROPERTY,
            "ctaExamples": CTAS[request.locale][:2],
        },
        "items": available,
        "instruction": INSTRUCTIONS[request.locale],
        "output": {"schema": {"items": [{"id": "string", "variants": [{"title": "string", "description": "string"}]}]}},
    }
    response = client.chat.completions.create(
        model=request.model,
        messages=[
            {"role": "system", "content": SYSTEM_PROMPTS[request.locale]},
            {"role": "user", "content": json.dumps(user_payload, ensure_ascii=False)},
        ],
        temperature=request.temperature,
        top_p=request.top_p,
        response_format={"type": "json_object"},
        max_tokens=1200,
    )
    content = response.choices[0].message.content if response.choices else None
    return parse_ad_ideas(content, [item["id"] for item in available]), response


def generate_ad_ideas(
    request: AdIdeasRequest,
    descriptions: Dict[str, Optional[str]],
    *,
    properties: Optional[Dict[str, Dict[str, Any]]] = None,
    client: Optional[OpenAI] = None,
) -> Dict[str, Any]:
    """
    Five title/description variants per requested property, in request order.

    `descriptions` maps property id to its listing description; ids without one
    are reported under `missing`. OpenAI output that cannot be used yields the
    native heuristic copy instead, flagged by `engine`.
    """
    properties = properties or {}
    missing = [pid for pid in request.property_ids if not strip_html(descriptions.get(pid))]
    available = [
        {"id": pid, "description": strip_html(descriptions[pid])[:DESCRIPTION_MAX_CHARS]}
        for pid in request.property_ids
        if pid not in missing
    ]
    if not available:
        raise NoDescriptionsError(missing)

    client = client if client is not None else get_openai_client()
    start = time.perf_counter()
    engine = "native"
    items: List[Dict[str, Any]] = []
    tokens_in = tokens_out = None
    if client is not None:
        try:
            items, response = _openai_ad_ideas(client, request, available)
            tokens_in, tokens_out = extract_usage_tokens(response)
            engine = "openai" if items else "native_fallback"
        except OpenAIError as exc:
            logger.warning("ad_ideas_openai_failed", extra={"error": repr(exc), "model": request.model})
            engine = "native_fallback"
    if not items:
        items = [
            {"id": item["id"], "variants": native_variants(item["description"], properties.get(item["id"]), request.locale)}
            for item in available
        ]
    latency_ms = round((time.perf_counter() - start) * 1000, 3)

    log_metric(
        "ads",
        "generate_ad_ideas",
        status=engine,
        latency_ms=latency_ms,
        items=len(items),
        tokens_in=tokens_in,
        tokens_out=tokens_out,
        model=request.model if engine == "openai" else None,
    )
    return {
        "ok": True,
        "engine": engine,
        "items": items,
        "missing": missing,
        "latency_ms": latency_ms,
        "usage": {"prompt_tokens": tokens_in, "completion_tokens": tokens_out} if tokens_in is not None else None,
        "model": request.model,
        "locale": request.locale,
        "temperature": request.temperature,
        "top_p": request.top_p,
    }


def _ensure_place(text: str) -> str:
    return text if "quer" in text.lower() and "taro" in text.lower() else f"{text} · {DEFAULT_PLACE}"


def _prompt_item(prop: Dict[str, Any]) -> Dict[str, Any]:
    operation, price = pick_operation(prop)
    return {
        "id": prop.get("public_id"),
        "title": prop.get("title"),
        "type": prop.get("property_type"),
        "status": prop.get("status"),
        "bedrooms": prop.get("bedrooms"),
        "bathrooms": prop.get("bathrooms"),
        "parkingSpaces": prop.get("parking_spaces"),
        "locationText": prop.get("location_text"),
        "operation": operation,
        "price": price,
        "description": first_sentence(prop.get("description")),
    }


def native_suggested_copy(ad_type: str, properties: List[Dict[str, Any]], base: Optional[str] = None) -> Dict[str, Any]:
    if ad_type == "single":
        prop = properties[0]
        copy = generate_native_copy(base or prop.get("description") or prop.get("title") or "", prop)
        copy["headline"] = limit_text(_ensure_place(copy["headline"]), MAX_HEADLINE)
        return {"ok": True, "type": "single", "copy": copy}
    carousel = generate_native_carousel(base, properties)
    return {"ok": True, "type": "carousel", **carousel}


def suggest_copy(
    ad_type: Literal["single", "carousel"],
    properties: List[Dict[str, Any]],
    *,
    engine: Optional[str] = None,
    base: Optional[str] = None,
    client: Optional[OpenAI] = None,
) -> Dict[str, Any]:
    if not properties:
        raise ValueError("At least one property is required.")
    client = client if client is not None else get_openai_client()
    if client is None or (engine or "").lower() == "native":
        return {**native_suggested_copy(ad_type, properties, base), "engine": "native"}

    output_schema = (
        {"headline": "string", "description": "string", "primaryText": "string"}
        if ad_type == "single"
        else {"message": "string", "copies": [{"id": "string", "headline": "string", "description": "string"}]}
    )
    user_payload = {
        "mode": ad_type,
        "items": [_prompt_item(prop) for prop in properties],
        "rules": {
            "headlineMax": MAX_HEADLINE,
            "descriptionMax": MAX_DESCRIPTION,
            "primaryMax": MAX_PRIMARY,
            "mustInclude": ["operacion", "precio", DEFAULT_PLACE],
        },
        "output": {"schema": output_schema},
    }
    with timed_operation("ads", "suggest_copy") as timer:
        timer.fields.update(items=len(properties), model=OPENAI_AD_MODEL, status="native_fallback")
        try:
            response = client.chat.completions.create(
                model=OPENAI_AD_MODEL,
                messages=[
                    {"role": "system", "content": SUGGEST_COPY_PROMPT},
                    {"role": "user", "content": json.dumps(user_payload, ensure_ascii=False)},
                ],
                temperature=0.3,
                response_format={"type": "json_object"},
            )
            parsed = json.loads(response.choices[0].message.content or "{}")
        except (OpenAIError, json.JSONDecodeError, IndexError) as exc:
            logger.warning("suggest_copy_openai_failed", extra={"error": repr(exc)})
            return {**native_suggested_copy(ad_type, properties, base), "engine": "native_fallback"}
        tokens_in, tokens_out = extract_usage_tokens(response)
        timer.fields.update(status="openai", tokens_in=tokens_in, tokens_out=tokens_out)
    if ad_type == "single" and isinstance(parsed, dict) and parsed.get("headline"):
        copy = {
            "headline": limit_text(parsed.get("headline"), MAX_HEADLINE),
            "description": limit_text(parsed.get("description"), MAX_DESCRIPTION),
            "primary_text": limit_text(parsed.get("primaryText") or parsed.get("primary_text"), MAX_PRIMARY),
        }
        return {"ok": True, "type": "single", "copy": copy, "engine": "openai"}
    if ad_type == "carousel" and isinstance(parsed, dict) and isinstance(parsed.get("copies"), list):
        copies = [
            {
                "id": entry.get("id"),
                "headline": limit_text(entry.get("headline"), MAX_HEADLINE),
                "description": limit_text(entry.get("description"), MAX_DESCRIPTION),
            }
            for entry in parsed["copies"]
            if isinstance(entry, dict)
        ]
        message = parsed.get("message") or f"Explora {len(properties)} propiedades destacadas en {DEFAULT_PLACE}"
        return {
            "ok": True,
            "type": "carousel",
            "message": limit_text(message, MAX_PRIMARY),
            "copies": copies,
            "engine": "openai",
        }
    return {**native_suggested_copy(ad_type, properties, base), "engine": "native_fallback"}
