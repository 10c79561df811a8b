from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _matches_text(record: Dict[str, Any], q: str) -> bool:
    needle = q.lower()
    for key in ("title", "public_id", "location_text", "property_type"):
        if needle in str(record.get(key) or "").lower():
            return True
    return False


class InMemoryStore:
    """Demo-mode store used when Supabase is not configured."""

    def __init__(self) -> None:
        self.properties: Dict[str, Dict[str, Any]] = {}
        self.leads: Dict[str, Dict[str, Any]] = {}

    # Properties -----------------------------------------------------------
    def upsert_property(self, record: Dict[str, Any]) -> Dict[str, Any]:
        public_id = record["public_id"]
        existing = self.properties.get(public_id)
        merged = {**(existing or {"created_at": _now_iso()}), **record, "updated_at": _now_iso()}
        self.properties[public_id] = merged
        return merged

    def get_property(self, public_id: str) -> Optional[Dict[str, Any]]:
        return self.properties.get(public_id)

    def _filtered(
        self,
        *,
        q: Optional[str] = None,
        property_type: Optional[str] = None,
        city: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
    ) -> List[Dict[str, Any]]:
        allowed = {s.lower() for s in statuses} if statuses else None
        rows = []
        for record in self.properties.values():
            if allowed is not None and str(record.get("status") or "").lower() not in allowed:
                continue
            if q and not _matches_text(record, q):
                continue
            if property_type and record.get("property_type") != property_type:
                continue
            if city and city.lower() not in str(record.get("location_text") or "").lower():
                continue
            rows.append(record)
        rows.sort(key=lambda r: r.get("updated_at") or "", reverse=True)
        return rows

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
        rows = self._filtered(q=q, property_type=property_type, city=city, statuses=statuses)
        return rows[offset : offset + limit]

    def count_properties(self, *, statuses: Optional[Iterable[str]] = None) -> int:
        return len(self._filtered(statuses=statuses))

    def search_properties(self, q: str, *, limit: int = 8) -> List[Dict[str, Any]]:
        return self._filtered(q=q)[:limit]

    # Leads ----------------------------------------------------------------
    def create_lead(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        lead_id = str(uuid.uuid4())
        lead = {**payload, "id": lead_id, "created_at": _now_iso()}
        self.leads[lead_id] = lead
        return lead

    def list_leads(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        leads = sorted(self.leads.values(), key=lambda lead: lead.get("created_at") or "", reverse=True)
        return leads[:limit] if limit else leads

    # Health ---------------------------------------------------------------
    def ping(self) -> bool:
        return True
