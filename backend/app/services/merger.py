"""
Normaliza resultados de várias fontes para `PoiFeature` e remove duplicatas.

Ordem de prioridade: primária (Foursquare) antes do fallback (OSM) — na
colisão, o primeiro visto ganha.  A chave de duplicata é
(nome em minúsculas, lon arredondada, lat arredondada).
"""

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from app.schemas import Coordinates, PoiFeature, PoiProperties, PoiSource, PointGeometry
from app.services.geometry import haversine_m
from app.services.query_builder import ResolvedFilters, classify

Mapper = Callable[[dict[str, Any]], Optional[PoiFeature]]

_PRIORITY = {PoiSource.PRIMARY: 0, PoiSource.FALLBACK: 1}


@dataclass
class SourceResult:
    """Um conjunto de registros crus + a função que os converte."""
    source: PoiSource
    records: list[dict[str, Any]]
    mapper: Mapper


def _feature(
    feature_id: str,
    source: PoiSource,
    lon: float,
    lat: float,
    name: str,
    category: str,
    address: Optional[str] = None,
    website: Optional[str] = None,
    distance_m: Optional[float] = None,
) -> PoiFeature:
    return PoiFeature(
        id=feature_id,
        geometry=PointGeometry(coordinates=[lon, lat]),
        properties=PoiProperties(
            source=source,
            name=name,
            category=category,
            address=address or None,
            website=website or None,
            distance_m=int(round(distance_m)) if distance_m is not None else None,
        ),
    )


# ── Foursquare ───────────────────────────────────────────────────

def foursquare_mapper(category: str, center: Optional[Coordinates] = None) -> Mapper:
    def _map(place: dict[str, Any]) -> Optional[PoiFeature]:
        geocodes = place.get("geocodes") or {}
        coords = geocodes.get("main") or geocodes.get("roof") or {}
        lat, lon = coords.get("latitude"), coords.get("longitude")
        if lat is None or lon is None:
            return None

        distance = place.get("distance")
        if distance is None and center is not None:
            distance = haversine_m(center.lat, center.lon, float(lat), float(lon))
        return _feature(
            feature_id=f"fsq:{place.get('fsq_id') or f'{lat},{lon}'}",
            source=PoiSource.PRIMARY,
            lon=float(lon),
            lat=float(lat),
            name=place.get("name") or category,
            category=category,
            address=(place.get("location") or {}).get("formatted_address"),
            website=place.get("website"),
            distance_m=float(distance) if distance is not None else None,
        )

    return _map


# ── Overpass / OSM ───────────────────────────────────────────────

def _osm_address(tags: dict[str, Any]) -> Optional[str]:
    if tags.get("addr:full"):
        return tags["addr:full"]
    street = " ".join(
        p for p in (tags.get("addr:street"), tags.get("addr:housenumber")) if p
    )
    parts = [p for p in (street, tags.get("addr:city")) if p]
    return ", ".join(parts) or None


def overpass_mapper(
    filters: ResolvedFilters,
    center: Optional[Coordinates] = None,
) -> Mapper:
    def _map(element: dict[str, Any]) -> Optional[PoiFeature]:
        # Nodes têm lat/lon direto; ways/relations usam o centro calculado
        if element.get("lat") is not None and element.get("lon") is not None:
            lat, lon = element["lat"], element["lon"]
        else:
            c = element.get("center") or {}
            lat, lon = c.get("lat"), c.get("lon")
        if lat is None or lon is None:
            return None

        tags = element.get("tags") or {}
        # Elementos sem tags são só geometria (nós de ways), não POIs
        if not tags:
            return None

        lat, lon = float(lat), float(lon)
        distance = haversine_m(center.lat, center.lon, lat, lon) if center else None
        return _feature(
            feature_id=f"osm:{element.get('type', 'node')}/{element.get('id')}",
            source=PoiSource.FALLBACK,
            lon=lon,
            lat=lat,
            name=tags.get("name") or tags.get("brand") or "Unnamed",
            category=classify(tags, filters),
            address=_osm_address(tags),
            website=tags.get("website") or tags.get("contact:website"),
            distance_m=distance,
        )

    return _map


# ── Merge ────────────────────────────────────────────────────────

def dedup_key(feature: PoiFeature, precision: int = 5) -> tuple[str, float, float]:
    g = feature.geometry
    return (
        feature.properties.name.strip().lower(),
        round(g.lon, precision),
        round(g.lat, precision),
    )


def merge(
    result_sets: Iterable[SourceResult],
    center: Optional[Coordinates] = None,
    precision: int = 5,
) -> list[PoiFeature]:
    ordered = sorted(result_sets, key=lambda r: _PRIORITY[r.source])

    seen: set[tuple[str, float, float]] = set()
    merged: list[PoiFeature] = []
    for result in ordered:
        for record in result.records:
            feature = result.mapper(record)
            if feature is None:
                continue
            key = dedup_key(feature, precision)
            if key in seen:
                continue
            seen.add(key)
            merged.append(feature)

    if center is not None:
        # sort estável: sem distância vai para o fim na ordem das fontes
        merged.sort(key=lambda f: (
            f.properties.distance_m is None,
            f.properties.distance_m or 0,
        ))
    return merged
