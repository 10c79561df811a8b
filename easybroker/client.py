from __future__ import annotations

import asyncio
import os
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote

import httpx
from dotenv import load_dotenv

from telemetry.logging_utils import get_logger
from telemetry.metrics import start_timer

from .pagination import (
    AggregationResult,
    ErrorPolicy,
    StopReason,
    aggregate_pages,
    clamp_page_size,
)

load_dotenv()
logger = get_logger(__name__)

EASYBROKER_API_BASE = os.getenv("EASYBROKER_API_BASE", "https://api.easybroker.com/v1")
EASYBROKER_TIMEOUT_SECONDS = float(os.getenv("EASYBROKER_TIMEOUT_SECONDS", "10"))
EASYBROKER_DEADLINE_SECONDS = float(os.getenv("EASYBROKER_DEADLINE_SECONDS", "120"))
EASYBROKER_MAX_PAGES = int(os.getenv("EASYBROKER_MAX_PAGES", "500"))
PROPERTIES_MAX_PAGES = 200
LEAD_PUSH_TIMEOUT_SECONDS = 5.0

CONTACT_ITEM_KEYS = ("content", "contacts", "requests")


class EasyBrokerError(Exception):
    """Base error for EasyBroker calls that are not aggregations."""


class EasyBrokerConfigError(EasyBrokerError):
    """Raised before any network call when the API key is missing."""


class EasyBrokerRequestError(EasyBrokerError):
    def __init__(self, status_code: int, body: str, url: str) -> None:
        super().__init__(f"EasyBroker {status_code} for {url}: {body[:200] or 'unknown error'}")
        self.status_code = status_code
        self.body = body
        self.url = url


class EasyBrokerClient:
    """
    Thin async client over the EasyBroker v1 REST API.

    Every request carries the static `X-Authorization` key. Listing methods
    drain all pages through `aggregate_pages` and never raise; single-shot
    methods raise `EasyBrokerRequestError` on non-2xx responses.
    """

    def __init__(
        self,
        api_key: Optional[str],
        *,
        base_url: str = EASYBROKER_API_BASE,
        timeout: float = EASYBROKER_TIMEOUT_SECONDS,
        deadline_seconds: Optional[float] = EASYBROKER_DEADLINE_SECONDS,
        max_pages: int = EASYBROKER_MAX_PAGES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = (api_key or "").strip() or None
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.deadline_seconds = deadline_seconds
        self.max_pages = max_pages
        self._transport = transport

    @classmethod
    def from_env(cls, **kwargs: Any) -> "EasyBrokerClient":
        return cls(os.getenv("EASYBROKER_API_KEY"), **kwargs)

    @property
    def configured(self) -> bool:
        return self.api_key is not None

    def require_key(self) -> str:
        if not self.api_key:
            raise EasyBrokerConfigError("EASYBROKER_API_KEY is not configured")
        return self.api_key

    def _http(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url + "/",
            headers={"X-Authorization": self.require_key(), "Accept": "application/json"},
            timeout=timeout or self.timeout,
            transport=self._transport,
        )

    # Aggregations ---------------------------------------------------------
    async def fetch_all(
        self,
        path: str,
        *,
        page_size: int = 20,
        params: Optional[Sequence[Tuple[str, Any]]] = None,
        item_keys: Sequence[str] = ("content",),
        max_pages: Optional[int] = None,
        policy: ErrorPolicy = ErrorPolicy.BEST_EFFORT,
    ) -> AggregationResult:
        if not self.configured:
            logger.warning("easybroker_key_missing", extra={"path": path})
            return AggregationResult.unavailable_result(StopReason.MISSING_CREDENTIALS, "EASYBROKER_API_KEY is not configured")

        timer = start_timer("easybroker", path)
        async with self._http() as http:
            result = await aggregate_pages(
                http,
                path,
                page_size=page_size,
                params=params,
                item_keys=item_keys,
                max_pages=min(max_pages or self.max_pages, self.max_pages),
                policy=policy,
                deadline_seconds=self.deadline_seconds,
            )
        await asyncio.to_thread(
            timer.done,
            status="unavailable" if result.unavailable else result.stop_reason.value,
            pages=result.pages_fetched,
            items=len(result.items),
        )
        return result

    async def fetch_all_properties(
        self,
        *,
        page_size: int = 50,
        params: Optional[Sequence[Tuple[str, Any]]] = None,
        policy: ErrorPolicy = ErrorPolicy.BEST_EFFORT,
    ) -> AggregationResult:
        return await self.fetch_all(
            "properties",
            page_size=page_size,
            params=params,
            max_pages=PROPERTIES_MAX_PAGES,
            policy=policy,
        )

    async def fetch_all_contacts(self, *, page_size: int = 20) -> AggregationResult:
        """Contacts live under `/contacts` on newer accounts and `/requests` on older ones."""
        result = await self.fetch_all("contacts", page_size=page_size, item_keys=CONTACT_ITEM_KEYS)
        if result.unavailable and result.stop_reason is StopReason.UPSTREAM_ERROR:
            logger.info("easybroker_contacts_fallback", extra={"error": result.error})
            result = await self.fetch_all("requests", page_size=page_size, item_keys=CONTACT_ITEM_KEYS)
        return result

    async def fetch_all_contact_requests(self, *, page_size: int = 20) -> AggregationResult:
        return await self.fetch_all("contact_requests", page_size=page_size, item_keys=("content", "requests"))

    # Single-shot calls ----------------------------------------------------
    async def list_properties_page(
        self,
        *,
        page: int = 1,
        limit: int = 50,
        params: Optional[Sequence[Tuple[str, Any]]] = None,
    ) -> Dict[str, Any]:
        query: List[Tuple[str, Any]] = [("page", max(1, int(page))), ("limit", clamp_page_size(limit))]
        query.extend((k, v) for k, v in (params or []) if k not in {"page", "limit"})
        async with self._http() as http:
            response = await http.get("properties", params=query)
        return self._json_or_raise(response)

    async def get_property(self, public_id: str) -> Dict[str, Any]:
        public_id = (public_id or "").strip()
        if not public_id:
            raise ValueError("public_id must not be empty.")
        async with self._http() as http:
            response = await http.get(f"properties/{quote(public_id, safe='')}")
        return self._json_or_raise(response)

    async def create_contact_request(self, payload: Dict[str, Any]) -> bool:
        """Push a lead to EasyBroker; failures are logged and reported as False."""
        if not self.configured:
            return False
        body = {k: v for k, v in payload.items() if v not in (None, "")}
        try:
            async with self._http(timeout=LEAD_PUSH_TIMEOUT_SECONDS) as http:
                response = await http.post("contact_requests", json=body)
        except httpx.HTTPError as exc:
            logger.warning("easybroker_lead_push_error", extra={"error": repr(exc), "property_id": body.get("property_id")})
            return False
        if not response.is_success:
            logger.warning(
                "easybroker_lead_push_failed",
                extra={"status_code": response.status_code, "property_id": body.get("property_id")},
            )
            return False
        return True

    @staticmethod
    def _json_or_raise(response: httpx.Response) -> Dict[str, Any]:
        if not response.is_success:
            raise EasyBrokerRequestError(response.status_code, response.text, str(response.request.url))
        try:
            data = response.json()
        except ValueError as exc:
            raise EasyBrokerRequestError(response.status_code, response.text, str(response.request.url)) from exc
        return data if isinstance(data, dict) else {"content": data}
