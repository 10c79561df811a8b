import json
from typing import Any, Callable, Dict, List

import httpx
import pytest

from easybroker.client import EasyBrokerClient

EB_BASE = "https://eb.test/v1"


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep metrics local and make sure no real credentials leak into a test."""
    monkeypatch.setenv("METRICS_DIR", str(tmp_path / "metrics"))
    for var in ("SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY", "OPENAI_API_KEY", "EASYBROKER_API_KEY"):
        monkeypatch.delenv(var, raising=False)
    yield


def json_response(body: Any, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, content=json.dumps(body).encode("utf-8"), headers={"content-type": "application/json"})


class RecordingHandler:
    """MockTransport handler that records requests and replies from a routing function."""

    def __init__(self, route: Callable[[httpx.Request], httpx.Response]) -> None:
        self.route = route
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.route(request)

    @property
    def urls(self) -> List[str]:
        return [str(r.url) for r in self.requests]

    def params(self, index: int) -> Dict[str, str]:
        return dict(self.requests[index].url.params)


@pytest.fixture()
def make_client():
    def _make(route, api_key: str = "test-key", **kwargs):
        handler = route if isinstance(route, RecordingHandler) else RecordingHandler(route)
        kwargs.setdefault("deadline_seconds", None)
        client = EasyBrokerClient(api_key, base_url=EB_BASE, transport=httpx.MockTransport(handler), **kwargs)
        return client, handler

    return _make
