from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import httpx
from postgrest import APIError
from supabase import Client, create_client

from telemetry.logging_utils import get_logger

logger = get_logger(__name__)

PROPERTIES = "properties"
LEADS = "leads"
LISTING_COLUMNS = (
    "public_id, title, title_image_full, title_image_thumb, location_text, property_type, "
    "status, bedrooms, bathrooms, parking_spaces, lot_size, construction_size, operations, updated_at"
)
SEARCH_COLUMNS = ("title", "public_id", "location_text", "property_type")
SUGGEST_COLUMNS = "public_id, title, property_type, location_text, updated_at"
TRANSIENT_ERRORS = (httpx.RemoteProtocolError, httpx.WriteError, APIError)


class SupabaseStore:
    """Property catalog and lead inbox backed by Supabase tables."""

    def __init__(self, url: str, key: str, *, attempts: int = 3, backoff_seconds: float = 0.25) -> None:
        self.client: Client = create_client(url, key)
        self.attempts = max(1, attempts)
        self.backoff_seconds = backoff_seconds

    def _execute(self, builder) -> Any:
        """Run a prepared query, sleeping and retrying on dropped connections or API errors."""
        pause = self.backoff_seconds
        for remaining in range(self.attempts - 1, -1, -1):
            try:
                return builder.execute()
            except TRANSIENT_ERRORS as exc:
                if not remaining:
                    raise
                logger.info("supabase_retry", extra={"remaining": remaining, "error": repr(exc)})
                time.sleep(pause)
                pause *= 2

    # Properties -------------------------------------------------------------------

    def upsert_property(self, record: Dict[str, Any]) -> Dict[str, Any]:
        row = dict(record, updated_at=datetime.now(timezone.utc).isoformat())
        resp = self._execute(self.client.table(PROPERTIES).upsert(row, on_conflict="public_id"))
        if not resp.data:
            raise RuntimeError(f"Supabase returned no row for property {record.get('public_id')}")
        return resp.data[0]

    def get_property(self, public_id: str) -> Optional[Dict[str, Any]]:
        resp = self._execute(self.client.table(PROPERTIES).select("*").eq("public_id", public_id).maybe_single())
        # maybe_single() yields None instead of an empty response when nothing matches
        return resp.data if resp is not None else None

    def _catalog(
        self,
        columns: str,
        *,
        q: Optional[str] = None,
        property_type: Optional[str] = None,
        city: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
        count: Optional[str] = None,
    ):
        query = self.client.table(PROPERTIES).select(columns, count=count)
        if statuses:
            query = query.in_("status", list(statuses))
        if q:
            term = q.replace(",", " ").replace("%", "")
            query = query.or_(",".join(f"{col}.ilike.%{term}%" for col in SEARCH_COLUMNS))
        if property_type:
            query = query.eq("property_type", property_type)
        if city:
            query = query.ilike("location_text", f"%{city}%")
        return query

    def list_properties(
        self,
        *,
        q: Optional[str] = None,
        property_type: Optional[str] = None,
        city: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
        limit: int = 24,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        query = self._catalog(LISTING_COLUMNS, q=q, property_type=property_type, city=city, statuses=statuses)
        resp = self._execute(query.order("updated_at", desc=True).range(offset, offset + limit - 1))
        return resp.data or []

    def count_properties(self, *, statuses: Optional[Iterable[str]] = None) -> int:
        resp = self._execute(self._catalog("public_id", statuses=statuses, count="exact").limit(1))
        return resp.count or 0

    def search_properties(self, q: str, *, limit: int = 8) -> List[Dict[str, Any]]:
        query = self._catalog(SUGGEST_COLUMNS, q=q).order("updated_at", desc=True).limit(limit)
        return self._execute(query).data or []

    # Leads ------------------------------------------------------------------------

    def create_lead(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        lead = dict(payload, id=payload.get("id") or str(uuid.uuid4()))
        resp = self._execute(self.client.table(LEADS).insert(lead))
        if not resp.data:
            raise RuntimeError("Supabase returned no row for the new lead")
        return resp.data[0]

    def list_leads(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        query = self.client.table(LEADS).select("*").order("created_at", desc=True)
        resp = self._execute(query.limit(limit) if limit else query)
        return resp.data or []

    # Health -----------------------------------------------------------------------

    def ping(self) -> bool:
        try:
            self._execute(self.client.table(PROPERTIES).select("public_id").limit(1))
        except (httpx.HTTPError, APIError):
            return False
        return True
