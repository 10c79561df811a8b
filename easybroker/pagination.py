"""
Drain a paginated listing endpoint into one ordered collection.

Listing APIs disagree on how they announce the next page: EasyBroker alone
returns a full `next_page` URL on some endpoints, a page number on others, and
only `limit/page/total` counters (or nothing) on the rest. The next request is
resolved by walking an ordered chain of strategies, from the strongest signal to
the weakest, and the loop is always bounded by a page ceiling and a wall-clock
deadline.
"""

from __future__ import annotations

import json
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import httpx

from telemetry.logging_utils import get_logger

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100
DEFAULT_MAX_PAGES = 500
DEFAULT_ITEM_KEYS: Tuple[str, ...] = ("content",)

QueryParams = Sequence[Tuple[str, Union[str, int, float]]]


class StopReason(str, Enum):
    EXHAUSTED = "exhausted"
    UPSTREAM_ERROR = "upstream_error"
    SAFETY_CEILING = "safety_ceiling"
    DEADLINE = "deadline"
    MISSING_CREDENTIALS = "missing_credentials"


class ErrorPolicy(str, Enum):
    BEST_EFFORT = "best_effort"
    FAIL_FAST = "fail_fast"


@dataclass
class NextPage:
    """Where to go after the current page: a verbatim URL, a page number, or nowhere."""

    url: Optional[str] = None
    page: Optional[int] = None

    @property
    def stop(self) -> bool:
        return self.url is None and self.page is None

    @classmethod
    def done(cls) -> "NextPage":
        return cls()


@dataclass
class PageResponse:
    items: List[Any]
    pagination: Dict[str, Any]
    status_code: int


@dataclass
class AggregationResult:
    items: List[Any] = field(default_factory=list)
    pages_fetched: int = 0
    requests_issued: int = 0
    stop_reason: StopReason = StopReason.EXHAUSTED
    unavailable: bool = False
    truncated: bool = False
    last_pagination: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def unavailable_result(cls, reason: StopReason, error: Optional[str] = None, **counts: int) -> "AggregationResult":
        return cls(stop_reason=reason, unavailable=True, error=error, **counts)

    def to_items_payload(self) -> Dict[str, Any]:
        return {"items": list(self.items), "truncated": self.truncated}

    def to_listing_payload(self, limit: int) -> Dict[str, Any]:
        pagination = {
            **self.last_pagination,
            "total": len(self.items),
            "page": 1,
            "next_page": None,
            "limit": limit,
        }
        return {
            "content": list(self.items),
            "pagination": pagination,
            "meta": {"pages_fetched": self.pages_fetched, "truncated": self.truncated},
        }


def clamp_page_size(size: Any, maximum: int = MAX_PAGE_SIZE) -> int:
    try:
        value = int(size)
    except (TypeError, ValueError):
        value = maximum
    return max(1, min(value, maximum))


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def extract_items(body: Any, item_keys: Sequence[str] = DEFAULT_ITEM_KEYS) -> List[Any]:
    if not isinstance(body, dict):
        return []
    for key in item_keys:
        value = body.get(key)
        if isinstance(value, list):
            return value
    return []


def parse_page(response: httpx.Response, item_keys: Sequence[str] = DEFAULT_ITEM_KEYS) -> PageResponse:
    """Decode one page; a body that is not JSON counts as an empty page."""
    try:
        body = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning(
            "easybroker_page_malformed",
            extra={"url": str(response.request.url), "status_code": response.status_code},
        )
        body = None
    pagination = body.get("pagination") if isinstance(body, dict) else None
    return PageResponse(
        items=extract_items(body, item_keys),
        pagination=pagination if isinstance(pagination, dict) else {},
        status_code=response.status_code,
    )


class UrlCursorStrategy:
    """`next_page` holds a fully qualified URL: follow it verbatim."""

    name = "url_cursor"

    def resolve(self, pagination: Dict[str, Any], items: List[Any], current_page: int, page_size: int) -> Optional[NextPage]:
        value = pagination.get("next_page")
        if isinstance(value, str) and value.strip().lower().startswith(("http://", "https://")):
            return NextPage(url=value.strip())
        return None


class NextPageNumberStrategy:
    """`next_page` is present as a page number; null, 0 or empty means the end."""

    name = "next_page_number"

    def resolve(self, pagination: Dict[str, Any], items: List[Any], current_page: int, page_size: int) -> Optional[NextPage]:
        if "next_page" not in pagination:
            return None
        value = pagination["next_page"]
        if value is None or value is False or value == "" or value == 0:
            return NextPage.done()
        if _is_int(value):
            return NextPage(page=value) if value > 0 else NextPage.done()
        if isinstance(value, str) and value.strip().isdigit():
            number = int(value.strip())
            return NextPage(page=number) if number > 0 else NextPage.done()
        return None


class CounterStrategy:
    """Only `limit`, `page` and `total` counters: keep going until the last page."""

    name = "counters"

    def resolve(self, pagination: Dict[str, Any], items: List[Any], current_page: int, page_size: int) -> Optional[NextPage]:
        limit, page, total = pagination.get("limit"), pagination.get("page"), pagination.get("total")
        if not (_is_int(limit) and _is_int(page) and _is_int(total)):
            return None
        total_pages = max(1, math.ceil((total or 0) / (limit or page_size)))
        page = page or current_page
        if page < total_pages:
            return NextPage(page=page + 1)
        return NextPage.done()


class ShortPageStrategy:
    """No metadata at all: a page shorter than requested is the last one."""

    name = "short_page"

    def resolve(self, pagination: Dict[str, Any], items: List[Any], current_page: int, page_size: int) -> Optional[NextPage]:
        if len(items) < page_size:
            return NextPage.done()
        return NextPage(page=current_page + 1)


DEFAULT_STRATEGIES = (
    UrlCursorStrategy(),
    NextPageNumberStrategy(),
    CounterStrategy(),
    ShortPageStrategy(),
)


def resolve_next_page(
    pagination: Dict[str, Any],
    items: List[Any],
    current_page: int,
    page_size: int,
    strategies: Sequence[Any] = DEFAULT_STRATEGIES,
) -> Tuple[NextPage, str]:
    for strategy in strategies:
        outcome = strategy.resolve(pagination, items, current_page, page_size)
        if outcome is not None:
            return outcome, strategy.name
    return NextPage.done(), "none"


def _page_params(params: QueryParams, page: int, page_size: int) -> List[Tuple[str, Any]]:
    fixed = [(k, v) for k, v in params if k not in {"page", "limit"}]
    return [("limit", page_size), ("page", page), *fixed]


async def aggregate_pages(
    http: httpx.AsyncClient,
    endpoint: str,
    *,
    page_size: int = 20,
    params: Optional[QueryParams] = None,
    item_keys: Sequence[str] = DEFAULT_ITEM_KEYS,
    max_pages: int = DEFAULT_MAX_PAGES,
    max_page_size: int = MAX_PAGE_SIZE,
    policy: ErrorPolicy = ErrorPolicy.BEST_EFFORT,
    deadline_seconds: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
    strategies: Sequence[Any] = DEFAULT_STRATEGIES,
) -> AggregationResult:
    """
    Fetch `endpoint` page by page until the upstream runs out of pages.

    Pages are requested strictly one after another because each request target
    depends on the previous response. Transport errors never escape: the first
    failed page makes the result `unavailable`, a later one either keeps the
    items gathered so far (`best_effort`, flagged `truncated`) or discards them
    (`fail_fast`).
    """
    page_size = clamp_page_size(page_size, max_page_size)
    fixed_params = list(params or [])
    started = clock()
    result = AggregationResult()
    current_page = 1
    next_url: Optional[str] = None
    # Some providers only send limit/total on the first page.
    carried_counters: Dict[str, int] = {}

    while True:
        if result.requests_issued >= max_pages:
            result.stop_reason = StopReason.SAFETY_CEILING
            result.truncated = True
            logger.warning(
                "aggregation_safety_ceiling",
                extra={"endpoint": endpoint, "max_pages": max_pages, "items": len(result.items)},
            )
            break
        if deadline_seconds is not None and clock() - started > deadline_seconds:
            result.stop_reason = StopReason.DEADLINE
            result.truncated = True
            logger.warning(
                "aggregation_deadline",
                extra={"endpoint": endpoint, "deadline_s": deadline_seconds, "items": len(result.items)},
            )
            break

        result.requests_issued += 1
        try:
            if next_url:
                response = await http.get(next_url)
            else:
                response = await http.get(endpoint, params=_page_params(fixed_params, current_page, page_size))
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            # InvalidURL is not an HTTPError; an unparseable cursor fails like a dead page
            error = f"{type(exc).__name__}: {exc}"
            status_code = None
        else:
            status_code = response.status_code
            error = None if response.is_success else f"HTTP {response.status_code}"

        if error is not None:
            logger.warning(
                "easybroker_page_failed",
                extra={
                    "endpoint": endpoint,
                    "page": current_page,
                    "status_code": status_code,
                    "error": error,
                    "pages_fetched": result.pages_fetched,
                },
            )
            result.stop_reason = StopReason.UPSTREAM_ERROR
            result.error = error
            if result.pages_fetched == 0 or policy is ErrorPolicy.FAIL_FAST:
                result.items = []
                result.unavailable = True
            else:
                result.truncated = True
            break

        page = parse_page(response, item_keys)
        result.pages_fetched += 1
        result.items.extend(page.items)
        if page.pagination:
            result.last_pagination = page.pagination

        effective = {**carried_counters, **page.pagination}
        carried_counters.update({k: page.pagination[k] for k in ("limit", "total") if _is_int(page.pagination.get(k))})
        outcome, strategy = resolve_next_page(effective, page.items, current_page, page_size, strategies)
        logger.debug(
            "easybroker_page_fetched",
            extra={"endpoint": endpoint, "page": current_page, "items": len(page.items), "strategy": strategy},
        )
        if outcome.stop:
            result.stop_reason = StopReason.EXHAUSTED
            break
        if outcome.url:
            next_url = outcome.url
            current_page += 1
        else:
            next_url = None
            current_page = outcome.page  # type: ignore[assignment]

    logger.info(
        "aggregation_complete",
        extra={
            "endpoint": endpoint,
            "items": len(result.items),
            "pages_fetched": result.pages_fetched,
            "requests_issued": result.requests_issued,
            "stop_reason": result.stop_reason.value,
            "unavailable": result.unavailable,
            "truncated": result.truncated,
            "elapsed_ms": round((clock() - started) * 1000, 3),
        },
    )
    return result
