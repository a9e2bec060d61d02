"""
Validação de geometria de consulta + distância haversine.

Roda antes de qualquer acesso a cache ou rede — é o ponto de rejeição mais
barato e impede consultas de área enorme de chegarem nos mirrors Overpass.
"""

import math
from typing import Any, Optional, Sequence

from pydantic import ValidationError

from app.core.config import get_settings
from app.core.exceptions import InvalidGeometry
from app.schemas import GeoBoundingBox, RadiusQuery

settings = get_settings()

EARTH_RADIUS_M = 6_371_000


def _number(name: str, raw: Any) -> float:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        raise InvalidGeometry(f"'{name}' é obrigatório")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise InvalidGeometry(f"'{name}' deve ser numérico") from None
    if not math.isfinite(value):
        raise InvalidGeometry(f"'{name}' deve ser finito")
    return value


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    where = ".".join(str(p) for p in err.get("loc", ()))
    msg = err.get("msg", "valor inválido")
    return f"{where}: {msg}" if where else msg


def parse_radius_query(
    lat: Any,
    lon: Any,
    radius: Any = None,
    *,
    min_radius: Optional[int] = None,
    max_radius: Optional[int] = None,
    default_radius: Optional[int] = None,
) -> RadiusQuery:
    """Valida centro + raio.  Raio ausente usa o padrão; fora da faixa é rejeitado."""
    min_radius = min_radius if min_radius is not None else settings.MIN_RADIUS_M
    max_radius = max_radius if max_radius is not None else settings.MAX_RADIUS_M

    lat_f = _number("lat", lat)
    lon_f = _number("lon", lon)
    if radius is None or (isinstance(radius, str) and not radius.strip()):
        radius_f = float(settings.DEFAULT_RADIUS_M if default_radius is None else default_radius)
    else:
        radius_f = _number("radius", radius)

    if not min_radius <= radius_f <= max_radius:
        raise InvalidGeometry(
            f"radius deve estar entre {min_radius} e {max_radius} metros"
        )

    try:
        return RadiusQuery(lat=lat_f, lon=lon_f, radius_m=int(round(radius_f)))
    except ValidationError as exc:
        raise InvalidGeometry(_first_error(exc)) from None


def parse_bbox(
    raw: str | Sequence[Any],
    *,
    max_span: Optional[float] = None,
) -> GeoBoundingBox:
    """
    Aceita "south,west,north,east" ou uma sequência de 4 números.
    Rejeita caixas degeneradas e caixas com lado maior que `max_span` graus.
    """
    max_span = max_span if max_span is not None else settings.MAX_BBOX_SPAN_DEG

    parts = raw.split(",") if isinstance(raw, str) else list(raw)
    if len(parts) != 4:
        raise InvalidGeometry("bbox deve ter 4 valores: south,west,north,east")

    south, west, north, east = (
        _number(name, value)
        for name, value in zip(("south", "west", "north", "east"), parts)
    )

    try:
        bbox = GeoBoundingBox(south=south, west=west, north=north, east=east)
    except ValidationError as exc:
        raise InvalidGeometry(_first_error(exc)) from None

    if bbox.lat_span > max_span or bbox.lon_span > max_span:
        raise InvalidGeometry("Área grande demais — aproxime o mapa.")
    return bbox


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distância em metros entre dois pontos (lat/lon em graus)."""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlon / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
