from __future__ import annotations

import json
import os
import re
from typing import Any, Dict, List, Literal, Optional, Tuple

import httpx
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from ads.ad_ideas import AdIdeasRequest, NoDescriptionsError, generate_ad_ideas, suggest_copy
from easybroker.client import EasyBrokerClient, EasyBrokerConfigError, EasyBrokerError, EasyBrokerRequestError
from easybroker.filters import build_query_params, matches_filters, parse_filters
from easybroker.pagination import StopReason, clamp_page_size
from easybroker.schemas import build_property_record, to_listing_item
from easybroker.suggest import suggest
from easybroker.sync import sync_properties
from storage.cache import TTLCache
from storage.memory_store import InMemoryStore
from storage.supabase_store import SupabaseStore
from telemetry.logging_utils import get_logger
from telemetry.metrics import fetch_metrics, summarize_metrics

load_dotenv()
logger = get_logger(__name__)

SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
SITE_BASE_URL = os.getenv("SITE_BASE_URL")
PLACEHOLDER_IMAGE = "/image3.jpg"

CATALOG_MAX_LIMIT = 200
_PUBLISHABLE_BASE = ["available", "disponible", "active", "activa", "published", "publicada", "en venta", "en renta"]
PUBLISHABLE_STATUSES = sorted(
    {*_PUBLISHABLE_BASE, *(s.capitalize() for s in _PUBLISHABLE_BASE), *(s.upper() for s in _PUBLISHABLE_BASE)}
)
LEAD_FIELD_LIMITS = {"name": 120, "email": 160, "phone": 40, "message": 2000}
UTM_KEYS = ("utm_source", "utm_medium", "utm_campaign", "utm_content", "utm_term")
MISSING_KEY_NOTE = "Falta EASYBROKER_API_KEY"

easybroker_cache = TTLCache(60)
contacts_cache = TTLCache(20)
catalog_cache = TTLCache(30)
copy_cache = TTLCache(600)
suggest_cache = TTLCache(60, max_entries=500)


def build_store():
    if SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY:
        return SupabaseStore(SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY)
    logger.info("store_in_memory", extra={"reason": "supabase_not_configured"})
    return InMemoryStore()


store = build_store()


class LeadPayload(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    message: Optional[str] = None
    property_public_id: Optional[str] = Field(default=None, alias="propertyPublicId")
    property_id: Optional[int] = Field(default=None, alias="propertyId")
    campaign_id: Optional[str] = Field(default=None, alias="campaignId")
    adset_id: Optional[str] = Field(default=None, alias="adsetId")
    ad_id: Optional[str] = Field(default=None, alias="adId")
    fbclid: Optional[str] = None
    source: Optional[str] = None
    page_path: Optional[str] = Field(default=None, alias="pagePath")

    model_config = {"populate_by_name": True}


class SuggestCopyPayload(BaseModel):
    property_ids: List[str] = Field(alias="propertyIds", min_length=1)
    ad_type: Literal["single", "carousel"] = Field(alias="adType")
    base: Optional[str] = None

    model_config = {"populate_by_name": True}


app = FastAPI(title="Sayro listings API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_store():
    return store


def get_easybroker_client() -> EasyBrokerClient:
    return EasyBrokerClient.from_env()


def reset_caches() -> None:
    for cache in (easybroker_cache, contacts_cache, catalog_cache, copy_cache, suggest_cache):
        cache.clear()


def _query_dict(request: Request) -> Dict[str, Any]:
    """Collapse query params into a dict; repeated keys keep every value as a list."""
    grouped: Dict[str, List[str]] = {}
    for key, value in request.query_params.multi_items():
        grouped.setdefault(key, []).append(value)
    return {key: values if len(values) > 1 else values[0] for key, values in grouped.items()}


def _cache_key(prefix: str, request: Request) -> Tuple[Any, ...]:
    return (prefix, *sorted(request.query_params.multi_items()))


def _as_int(value: Any, default: int) -> int:
    try:
        return int(str(value))
    except (TypeError, ValueError):
        return default


def _is_truthy(value: Any) -> bool:
    return str(value or "").strip().lower() in {"1", "true"}


def _raise_upstream(exc: EasyBrokerError) -> None:
    if isinstance(exc, EasyBrokerConfigError):
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
    if isinstance(exc, EasyBrokerRequestError):
        raise HTTPException(status_code=exc.status_code, detail=exc.body[:500] or str(exc))
    raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))


@app.get("/api/health")
def health(store=Depends(get_store), client: EasyBrokerClient = Depends(get_easybroker_client)):
    return {
        "ok": True,
        "store": type(store).__name__,
        "store_ok": store.ping(),
        "easybroker_configured": client.configured,
    }


# EasyBroker passthrough -------------------------------------------------------------


@app.get("/api/easybroker/properties")
async def easybroker_properties(request: Request, client: EasyBrokerClient = Depends(get_easybroker_client)):
    query = _query_dict(request)
    per_page = clamp_page_size(_as_int(query.get("limit"), 50))
    filters = parse_filters(query)
    params = build_query_params(filters)
    cache_key = _cache_key("easybroker_properties", request)
    cached = easybroker_cache.get(cache_key)
    if cached is not None:
        return cached

    if not _is_truthy(query.get("all")):
        page = max(1, _as_int(query.get("page"), 1))
        try:
            data = await client.list_properties_page(page=page, limit=per_page, params=params)
        except EasyBrokerError as exc:
            _raise_upstream(exc)
        except httpx.HTTPError as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=repr(exc))
        easybroker_cache.set(cache_key, data)
        return data

    result = await client.fetch_all_properties(page_size=per_page, params=params)
    if result.unavailable:
        if result.stop_reason is StopReason.MISSING_CREDENTIALS:
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=result.error)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "EasyBroker catalog unavailable", "reason": result.error},
        )
    result.items = [item for item in result.items if matches_filters(item, filters)]
    payload = result.to_listing_payload(per_page)
    easybroker_cache.set(cache_key, payload)
    return payload


@app.get("/api/easybroker/properties/{public_id}")
async def easybroker_property(public_id: str, client: EasyBrokerClient = Depends(get_easybroker_client)):
    try:
        return await client.get_property(public_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except EasyBrokerError as exc:
        _raise_upstream(exc)
    except httpx.HTTPError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=repr(exc))


@app.get("/api/admin/easybroker/contacts")
async def easybroker_contacts(client: EasyBrokerClient = Depends(get_easybroker_client)):
    if not client.configured:
        return {"items": [], "note": MISSING_KEY_NOTE}
    cached = contacts_cache.get("contacts")
    if cached is not None:
        return cached
    result = await client.fetch_all_contacts()
    payload = {**result.to_items_payload(), "unavailable": result.unavailable}
    if not result.unavailable:
        contacts_cache.set("contacts", payload)
    return payload


@app.get("/api/admin/easybroker/contact-requests")
async def easybroker_contact_requests(client: EasyBrokerClient = Depends(get_easybroker_client)):
    if not client.configured:
        return {"items": [], "note": MISSING_KEY_NOTE}
    cached = contacts_cache.get("contact_requests")
    if cached is not None:
        return cached
    result = await client.fetch_all_contact_requests()
    payload = {**result.to_items_payload(), "unavailable": result.unavailable}
    if not result.unavailable:
        contacts_cache.set("contact_requests", payload)
    return payload


@app.post("/api/admin/sync")
async def admin_sync(store=Depends(get_store), client: EasyBrokerClient = Depends(get_easybroker_client)):
    report = await sync_properties(client, store)
    if report.unavailable:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=report.to_dict())
    catalog_cache.clear()
    return report.to_dict()


# Catalog ------------------------------------------------------------------------------


@app.get("/api/properties")
def list_catalog(request: Request, store=Depends(get_store)):
    query = _query_dict(request)
    limit = min(max(1, _as_int(query.get("limit"), 24)), CATALOG_MAX_LIMIT)
    page = max(1, _as_int(query.get("page"), 1))
    q = str(query.get("q") or "").strip() or None
    property_type = str(query.get("type") or "").strip() or None
    city = str(query.get("city") or "").strip() or None
    fast = _is_truthy(query.get("fast"))

    cache_key = _cache_key("catalog", request)
    cached = catalog_cache.get(cache_key)
    if cached is not None:
        return cached

    rows = store.list_properties(
        q=q,
        property_type=property_type,
        city=city,
        statuses=PUBLISHABLE_STATUSES,
        limit=limit,
        offset=(page - 1) * limit,
    )
    total = None if (q or property_type or city or fast) else store.count_properties(statuses=PUBLISHABLE_STATUSES)
    total_pages = max(-(-total // limit), 1) if total else None
    if total_pages:
        next_page = page + 1 if page < total_pages else None
    else:
        next_page = None if len(rows) < limit else page + 1
    payload = {
        "content": [to_listing_item(row, PLACEHOLDER_IMAGE) for row in rows],
        "pagination": {
            "limit": limit,
            "total": total,
            "page": page,
            "total_pages": total_pages,
            "next_page": next_page,
            "prev_page": page - 1 if page > 1 else None,
        },
    }
    catalog_cache.set(cache_key, payload)
    return payload


@app.get("/api/properties/suggest")
def suggest_catalog(q: str = "", store=Depends(get_store)):
    key = q.strip().lower()
    cached = suggest_cache.get(key)
    if cached is not None:
        return cached
    payload = {"items": suggest(q, store)}
    if key:
        suggest_cache.set(key, payload)
    return payload


# Leads ----------------------------------------------------------------------------------


def _clip(value: Optional[str], field_name: str) -> Optional[str]:
    text = (value or "").strip()
    return text[: LEAD_FIELD_LIMITS[field_name]] or None


def derive_lead_source(explicit: Optional[str], fbclid: Optional[str], utm_source: Optional[str]) -> str:
    if explicit:
        return explicit
    utm = (utm_source or "").lower()
    return "meta" if fbclid or "meta" in utm or "facebook" in utm else "website"


def _site_name(request: Request) -> str:
    site = SITE_BASE_URL or request.headers.get("host") or "website"
    return re.sub(r"^https?://", "", site).rstrip("/")


@app.post("/api/leads", status_code=status.HTTP_201_CREATED)
async def create_lead(
    payload: LeadPayload,
    request: Request,
    store=Depends(get_store),
    client: EasyBrokerClient = Depends(get_easybroker_client),
):
    if not (payload.email or payload.phone):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="An email or phone is required.")
    query = request.query_params
    utm = {key: query.get(key) or None for key in UTM_KEYS}
    fbclid = query.get("fbclid") or payload.fbclid or None
    lead = {
        "source": derive_lead_source(payload.source, fbclid, utm["utm_source"]),
        "name": _clip(payload.name, "name"),
        "email": _clip(payload.email, "email"),
        "phone": _clip(payload.phone, "phone"),
        "message": _clip(payload.message, "message"),
        "property_public_id": payload.property_public_id or None,
        "property_id": payload.property_id,
        "campaign_id": payload.campaign_id,
        "adset_id": payload.adset_id,
        "ad_id": payload.ad_id,
        "fbclid": fbclid,
        **utm,
        "page_path": payload.page_path or request.headers.get("x-pathname") or request.url.path,
        "referrer": request.headers.get("referer"),
    }
    try:
        created = await run_in_threadpool(store.create_lead, lead)
    except RuntimeError as exc:
        logger.error("lead_create_failed", extra={"error": str(exc)})
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="cannot_create")

    pushed = False
    eb_id = (payload.property_public_id or "").strip().upper()
    if eb_id.startswith("EB-"):
        pushed = await client.create_contact_request(
            {
                "name": payload.name,
                "phone": payload.phone,
                "email": payload.email,
                "property_id": eb_id,
                "message": payload.message,
                "source": _site_name(request),
            }
        )
    logger.info("lead_created", extra={"lead_id": created["id"], "source": lead["source"], "pushed": pushed})
    return {"ok": True, "id": created["id"], "easybroker_pushed": pushed}


@app.get("/api/admin/leads")
def list_leads(limit: int = 200, store=Depends(get_store)):
    return {"items": store.list_leads(limit=min(max(1, limit), 1000))}


# Ad copy ---------------------------------------------------------------------------------


def _detail_description(record: Optional[Dict[str, Any]]) -> Optional[str]:
    if not record:
        return None
    if record.get("description"):
        return record["description"]
    detail = record.get("detail_json")
    if not isinstance(detail, str) or not detail:
        return None
    try:
        parsed = json.loads(detail)
    except json.JSONDecodeError:
        return None
    return parsed.get("description") if isinstance(parsed, dict) else None


async def _resolve_property(
    public_id: str,
    store,
    client: EasyBrokerClient,
) -> Optional[Dict[str, Any]]:
    record = await run_in_threadpool(store.get_property, public_id)
    if record and record.get("description"):
        return record
    if not client.configured:
        return record
    try:
        detail = await client.get_property(public_id)
    except (EasyBrokerError, ValueError, httpx.HTTPError) as exc:
        logger.warning("ad_property_lookup_failed", extra={"public_id": public_id, "error": repr(exc)})
        return record
    return build_property_record({"public_id": public_id, **(record or {})}, detail)


@app.post("/api/admin/meta/generate-ad-ideas")
async def generate_ad_ideas_route(
    payload: AdIdeasRequest,
    store=Depends(get_store),
    client: EasyBrokerClient = Depends(get_easybroker_client),
):
    properties: Dict[str, Dict[str, Any]] = {}
    descriptions: Dict[str, Optional[str]] = {}
    for public_id in payload.property_ids:
        record = await _resolve_property(public_id, store, client)
        if record:
            properties[public_id] = record
        descriptions[public_id] = _detail_description(record)
    try:
        return await run_in_threadpool(generate_ad_ideas, payload, descriptions, properties=properties)
    except NoDescriptionsError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": str(exc), "missing": exc.missing},
        )


@app.post("/api/admin/meta/suggest-copy")
def suggest_copy_route(payload: SuggestCopyPayload, engine: Optional[str] = None, store=Depends(get_store)):
    properties = [p for p in (store.get_property(pid) for pid in payload.property_ids) if p]
    if not properties:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Properties not found.")
    cache_key = (payload.ad_type, engine or "", *sorted(payload.property_ids))
    cached = copy_cache.get(cache_key)
    if cached is not None:
        return cached
    result = suggest_copy(payload.ad_type, properties, engine=engine, base=payload.base)
    copy_cache.set(cache_key, result)
    return result


# Metrics ---------------------------------------------------------------------------------


@app.get("/api/admin/metrics")
def metrics_summary(limit: int = 500):
    records = fetch_metrics(limit=min(max(1, limit), 5000))
    return {"summary": summarize_metrics(records), "records": records[:50]}
