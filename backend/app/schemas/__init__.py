"""
Schemas Pydantic para toda a API.

Definem os contratos de request/response e são usados na geração
automática da documentação OpenAPI (Swagger / ReDoc).  O formato das
features segue GeoJSON para funcionar direto com Mapbox/Leaflet.
"""

from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator


# ═══════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════

class PoiSource(str, Enum):
    PRIMARY = "primary"      # API comercial (Foursquare)
    FALLBACK = "fallback"    # OpenStreetMap via Overpass


# ═══════════════════════════════════════════════════════════════
# Geometria de consulta
# ═══════════════════════════════════════════════════════════════

class Coordinates(BaseModel):
    lat: float = Field(..., ge=-90, le=90, description="Latitude")
    lon: float = Field(..., ge=-180, le=180, description="Longitude")


class RadiusQuery(Coordinates):
    """Centro + raio em metros (modo "perto de mim")."""
    radius_m: int = Field(..., gt=0, description="Raio em metros")


class GeoBoundingBox(BaseModel):
    """Retângulo sul/oeste/norte/leste em graus (modo mapa)."""

    south: float = Field(..., ge=-90, le=90)
    west: float = Field(..., ge=-180, le=180)
    north: float = Field(..., ge=-90, le=90)
    east: float = Field(..., ge=-180, le=180)

    @model_validator(mode="after")
    def _not_degenerate(self) -> "GeoBoundingBox":
        if self.north <= self.south:
            raise ValueError("north deve ser maior que south")
        if self.east <= self.west:
            raise ValueError("east deve ser maior que west")
        return self

    @property
    def lat_span(self) -> float:
        return self.north - self.south

    @property
    def lon_span(self) -> float:
        return self.east - self.west


# ═══════════════════════════════════════════════════════════════
# Features (GeoJSON)
# ═══════════════════════════════════════════════════════════════

class PointGeometry(BaseModel):
    type: Literal["Point"] = "Point"
    coordinates: list[float] = Field(
        ..., min_length=2, max_length=2, description="[lon, lat] (ordem GeoJSON)"
    )

    @property
    def lon(self) -> float:
        return self.coordinates[0]

    @property
    def lat(self) -> float:
        return self.coordinates[1]


class PoiProperties(BaseModel):
    source: PoiSource
    name: str
    category: str
    address: Optional[str] = None
    website: Optional[str] = None
    distance_m: Optional[int] = Field(None, ge=0, description="Distância ao centro (m)")


class PoiFeature(BaseModel):
    """Unidade normalizada de saída — independente da fonte."""

    type: Literal["Feature"] = "Feature"
    id: str = Field(..., description="fsq:<id> ou osm:<tipo>/<id>")
    geometry: PointGeometry
    properties: PoiProperties


class FeatureCollection(BaseModel):
    """GET /places?bbox=… — resposta."""

    type: Literal["FeatureCollection"] = "FeatureCollection"
    features: list[PoiFeature] = Field(default_factory=list)


class NearbyResponse(BaseModel):
    """GET /places?lat=…&lon=…&radius=… — resposta."""

    center: Coordinates
    radius: int
    results: list[PoiFeature] = Field(default_factory=list)

    model_config = {"json_schema_extra": {
        "examples": [{
            "center": {"lat": 33.8938, "lon": 35.5018},
            "radius": 1500,
            "results": [{
                "type": "Feature",
                "id": "osm:node/101",
                "geometry": {"type": "Point", "coordinates": [35.5021, 33.8941]},
                "properties": {
                    "source": "fallback",
                    "name": "Beirut Fitness Club",
                    "category": "gym",
                    "distance_m": 43,
                },
            }],
        }]
    }}


class ErrorResponse(BaseModel):
    error: str


# ═══════════════════════════════════════════════════════════════
# Health / Metrics
# ═══════════════════════════════════════════════════════════════

class HealthResponse(BaseModel):
    status: str
    version: str
    cache: str
    apis: dict[str, str]


class MetricsResponse(BaseModel):
    requests_total: int
    rate_limited: int
    upstream_failures: int
    cache_hits: int
    cache_misses: int
    stale_served: int
    avg_response_ms: float
