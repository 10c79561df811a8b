"""Import the EasyBroker catalog into the local property store."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
from postgrest import APIError

from telemetry.logging_utils import get_logger
from telemetry.metrics import start_timer
from telemetry.retry import is_retryable_http_error, retry_async_with_backoff

from .client import EasyBrokerClient, EasyBrokerError
from .schemas import build_property_record, validate_properties

logger = get_logger(__name__)

DETAIL_FETCH_CONCURRENCY = 5
STORE_ERRORS = (RuntimeError, APIError, httpx.HTTPError)


@dataclass
class SyncReport:
    imported: int = 0
    errors: int = 0
    truncated: bool = False
    unavailable: bool = False
    listed: int = 0
    failed_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "imported": self.imported,
            "errors": self.errors,
            "truncated": self.truncated,
            "unavailable": self.unavailable,
            "listed": self.listed,
            "failed_ids": list(self.failed_ids),
        }


def dedupe_by_public_id(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    seen = set()
    unique: List[Dict[str, Any]] = []
    for item in items:
        public_id = item.get("public_id")
        if not public_id or public_id in seen:
            continue
        seen.add(public_id)
        unique.append(item)
    return unique


async def sync_properties(
    client: EasyBrokerClient,
    store: Any,
    *,
    page_size: int = 100,
    concurrency: int = DETAIL_FETCH_CONCURRENCY,
    retries: int = 3,
    base_delay: float = 0.5,
) -> SyncReport:
    """
    Pull every listing, enrich each one with its detail payload and upsert it.

    A listing whose detail cannot be fetched is still stored from the listing
    data and counted under `errors`, as is a listing the store rejects. An
    unavailable catalog imports nothing.
    """
    timer = start_timer("sync", "properties")
    result = await client.fetch_all_properties(page_size=page_size)
    report = SyncReport(truncated=result.truncated, unavailable=result.unavailable)
    if result.unavailable:
        logger.warning("sync_catalog_unavailable", extra={"stop_reason": result.stop_reason.value, "error": result.error})
        return report

    listings = dedupe_by_public_id(validate_properties(result.items))
    report.listed = len(listings)
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def import_one(listing: Dict[str, Any]) -> None:
        public_id = listing["public_id"]
        detail: Optional[Dict[str, Any]] = None
        async with semaphore:
            try:
                detail = await retry_async_with_backoff(
                    lambda: client.get_property(public_id),
                    retries=retries,
                    base_delay=base_delay,
                    should_retry=is_retryable_http_error,
                )
            except (EasyBrokerError, httpx.HTTPError) as exc:
                report.errors += 1
                report.failed_ids.append(public_id)
                logger.warning("sync_detail_failed", extra={"public_id": public_id, "error": repr(exc)})
        try:
            await asyncio.to_thread(store.upsert_property, build_property_record(listing, detail))
        except STORE_ERRORS as exc:
            report.errors += 1
            if public_id not in report.failed_ids:
                report.failed_ids.append(public_id)
            logger.error("sync_store_failed", extra={"public_id": public_id, "error": repr(exc)})
            return
        report.imported += 1

    await asyncio.gather(*(import_one(listing) for listing in listings))

    await asyncio.to_thread(
        timer.done,
        status="truncated" if report.truncated else "ok",
        pages=result.pages_fetched,
        items=report.imported,
    )
    logger.info("sync_complete", extra=report.to_dict())
    return report
