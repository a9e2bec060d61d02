"""
Endpoints REST da API.

Endpoints:
  GET  /places?lat&lon&radius&types   — Locais perto de um ponto (Foursquare + OSM)
  GET  /places?bbox=s,w,n,e&filters   — Locais na área visível do mapa (OSM)
  GET  /health                        — Health check
  GET  /metrics                       — Métricas básicas

Ordem das guardas em /places: rate limit → validação → cache/upstream.
"""

import logging
import re
import time
from typing import Optional, Union

from fastapi import APIRouter, Depends, Query, Request

from app.core.cache import cache_service
from app.core.config import get_settings
from app.core.exceptions import PlacesError, TooManyRequests, UpstreamUnavailable
from app.core.rate_limit import RateLimiter, rate_limiter
from app.schemas import (
    ErrorResponse,
    FeatureCollection,
    HealthResponse,
    MetricsResponse,
    NearbyResponse,
)
from app.services.geometry import parse_bbox, parse_radius_query
from app.services.places_service import PlacesService

logger = logging.getLogger(__name__)

router = APIRouter()
_places_service: Optional[PlacesService] = None

# ── Métricas simples in-memory ───────────────────────────────────
_metrics = {
    "requests_total": 0,
    "rate_limited": 0,
    "upstream_failures": 0,
    "response_times": [],
}


# ── Dependências (sobrescritas nos testes) ───────────────────────

def get_rate_limiter() -> RateLimiter:
    return rate_limiter


def get_places_service() -> PlacesService:
    global _places_service
    if _places_service is None:
        _places_service = PlacesService()
    return _places_service


def client_ip(request: Request) -> str:
    if get_settings().TRUST_PROXY_HEADERS:
        forwarded = request.headers.get("x-forwarded-for", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


def enforce_rate_limit(
    request: Request,
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> None:
    """Guarda mais externa — roda antes de qualquer validação."""
    _metrics["requests_total"] += 1
    try:
        limiter.hit(f"places:{client_ip(request)}")
    except TooManyRequests:
        _metrics["rate_limited"] += 1
        raise


_FILTER_PARAM = re.compile(r"^filters\[([^\[\]]+)\](\[\])?$")


def _query_list(request: Request, *names: str) -> list[str]:
    values: list[str] = []
    for name in names:
        values.extend(request.query_params.getlist(name))

    # filters[amenity]=gym, filters[amenity][]=a&filters[amenity][]=b
    grouped: dict[str, list[str]] = {}
    for key, value in request.query_params.multi_items():
        match = _FILTER_PARAM.match(key)
        if match:
            grouped.setdefault(match.group(1), []).append(value.strip())
    for key, alts in grouped.items():
        alts = [a for a in alts if a]
        values.append(f"{key}={'|'.join(alts)}" if alts else f"{key}=*")
    return values


# ═══════════════════════════════════════════════════════════════
# GET /places — Locais próximos
# ═══════════════════════════════════════════════════════════════

@router.get(
    "/places",
    response_model=Union[NearbyResponse, FeatureCollection],
    tags=["places"],
    summary="Busca academias/nutricionistas próximos",
    description="""
    Dois modos:

    - **raio**: `lat`, `lon` (ou `lng`), `radius` em metros (200–5000) e
      `types` (ex: `gym,nutritionist`). Responde `{center, radius, results}`.
    - **bbox**: `bbox=south,west,north,east` (lado máx. 0.5°) e `filters`
      (categorias ou `chave=valor`). Responde um GeoJSON FeatureCollection.

    Limite de 20 requisições/minuto por IP.
    """,
    responses={
        422: {"model": ErrorResponse, "description": "Geometria inválida"},
        429: {"model": ErrorResponse, "description": "Rate limit"},
        502: {"model": ErrorResponse, "description": "Upstream indisponível"},
    },
    dependencies=[Depends(enforce_rate_limit)],
)
async def places(
    request: Request,
    lat: Optional[str] = Query(None, description="Latitude do centro"),
    lon: Optional[str] = Query(None, description="Longitude do centro"),
    lng: Optional[str] = Query(None, include_in_schema=False),
    radius: Optional[str] = Query(None, description="Raio em metros"),
    bbox: Optional[str] = Query(None, description="south,west,north,east"),
    service: PlacesService = Depends(get_places_service),
):
    start = time.time()

    # Validação antes de qualquer cache/rede
    if bbox is not None:
        box = parse_bbox(bbox)
        filters = _query_list(request, "filters", "filters[]", "types")
        run = service.in_bbox(box, filters)
    else:
        query = parse_radius_query(lat, lon if lon is not None else lng, radius)
        types = _query_list(request, "types", "types[]")
        run = service.nearby(query, types)

    try:
        return await run
    except PlacesError as exc:
        if isinstance(exc, UpstreamUnavailable):
            _metrics["upstream_failures"] += 1
        raise
    except Exception as exc:
        _metrics["upstream_failures"] += 1
        logger.exception("❌ Falha inesperada em /places")
        raise UpstreamUnavailable(f"erro interno: {type(exc).__name__}") from exc
    finally:
        _metrics["response_times"].append(time.time() - start)
        del _metrics["response_times"][:-100]


# ═══════════════════════════════════════════════════════════════
# GET /health — Health check
# ═══════════════════════════════════════════════════════════════

@router.get(
    "/health",
    response_model=HealthResponse,
    tags=["infra"],
    summary="Verifica saúde da aplicação",
)
async def health():
    s = get_settings()
    cache_status = "connected" if await cache_service.is_connected() else "local_fallback"

    return HealthResponse(
        status="healthy",
        version=s.APP_VERSION,
        cache=cache_status,
        apis={
            "overpass": f"{len(s.overpass_endpoints_list)} mirrors",
            "foursquare": "configured" if s.FOURSQUARE_API_KEY else "not_configured",
            "insecure_tls_fallback": "on" if s.OVERPASS_INSECURE_TLS_FALLBACK else "off",
        },
    )


# ═══════════════════════════════════════════════════════════════
# GET /metrics — Métricas básicas
# ═══════════════════════════════════════════════════════════════

@router.get(
    "/metrics",
    response_model=MetricsResponse,
    tags=["infra"],
    summary="Métricas da aplicação",
)
async def metrics():
    times = _metrics["response_times"][-100:]
    avg_ms = (sum(times) / len(times) * 1000) if times else 0

    return MetricsResponse(
        requests_total=_metrics["requests_total"],
        rate_limited=_metrics["rate_limited"],
        upstream_failures=_metrics["upstream_failures"],
        cache_hits=cache_service.hits,
        cache_misses=cache_service.misses,
        stale_served=cache_service.stale_hits,
        avg_response_ms=round(avg_ms, 2),
    )
