"""
Fixtures compartilhadas entre todos os testes.
"""

from typing import Any, Callable, Union

import httpx
import pytest
from httpx import AsyncClient, ASGITransport

from app.api.routes import get_places_service, get_rate_limiter
from app.clients.foursquare_client import FoursquareClient
from app.clients.overpass_client import OverpassClient, RetryPolicy
from app.core.cache import CacheService
from app.core.rate_limit import RateLimiter
from app.main import app
from app.services.places_service import PlacesService

MIRRORS = [
    "https://mirror-a.test/api/interpreter",
    "https://mirror-b.test/api/interpreter",
    "https://mirror-c.test/api/interpreter",
]

Scripted = Union[httpx.Response, Exception, Callable[[httpx.Request], httpx.Response]]


class FakeClock:
    """Relógio controlável para cache e rate limiter."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Substitui asyncio.sleep — registra os atrasos sem dormir."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class Upstream:
    """
    Transport roteirizado por host: cada host consome sua lista de respostas
    em ordem (a última se repete).  Registra todas as requisições.
    """

    def __init__(self, script: dict[str, list[Scripted]] | None = None) -> None:
        self.script = script or {}
        self.requests: list[httpx.Request] = []

    def calls_to(self, host: str) -> int:
        return sum(1 for r in self.requests if r.url.host == host)

    @property
    def total_calls(self) -> int:
        return len(self.requests)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.script.get(request.url.host)
        if not queue:
            return httpx.Response(404, text="no script")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(request)
        return item

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def overpass_json(*elements: dict[str, Any]) -> httpx.Response:
    return httpx.Response(200, json={"version": 0.6, "elements": list(elements)})


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def cache(clock) -> CacheService:
    return CacheService(clock=clock, max_local_entries=100, stale_ttl=86_400)


@pytest.fixture
def upstream() -> Upstream:
    return Upstream()


@pytest.fixture
def make_overpass(cache, sleeps, upstream):
    def _make(**kwargs: Any) -> OverpassClient:
        kwargs.setdefault("endpoints", list(MIRRORS))
        kwargs.setdefault("retry_policy", RetryPolicy(max_retries=2, base_delay=1.0, backoff_factor=2.0))
        kwargs.setdefault("insecure_fallback", False)
        kwargs.setdefault("cache_ttl", 600)
        return OverpassClient(
            cache=cache,
            transport=upstream.transport,
            sleep=sleeps,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_service(make_overpass, cache, upstream):
    def _make(fsq_key: str = "", **kwargs: Any) -> PlacesService:
        foursquare = FoursquareClient(
            api_key=fsq_key,
            cache=cache,
            base_url="https://fsq.test/v3",
            transport=upstream.transport,
        )
        return PlacesService(overpass=make_overpass(), foursquare=foursquare, **kwargs)

    return _make


@pytest.fixture
async def client():
    """
    TestClient assíncrono para testes de integração.
    Usa httpx.AsyncClient com ASGITransport — não precisa de servidor real.
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def wire(make_service, clock):
    """Injeta serviço e rate limiter de teste na app; limpa ao final."""
    limiter = RateLimiter(limit=20, window_seconds=60, clock=clock)

    def _wire(**kwargs: Any) -> PlacesService:
        service = make_service(**kwargs)
        app.dependency_overrides[get_places_service] = lambda: service
        app.dependency_overrides[get_rate_limiter] = lambda: limiter
        return service

    yield _wire
    app.dependency_overrides.clear()
