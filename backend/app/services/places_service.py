"""
Serviço de locais próximos (academias, nutricionistas, …).

Orquestra o pipeline único para os dois modos de consulta:

  raio  → query builder → Foursquare (por categoria) + Overpass → merger
  bbox  → query builder → Overpass → merger

A mistura de fontes é configuração (`PLACES_PRIMARY_ENABLED`,
`PLACES_FALLBACK_ENABLED`), não um branch escondido.
"""

import logging
from typing import Iterable, Optional

from app.clients.foursquare_client import FoursquareClient
from app.clients.overpass_client import OverpassClient
from app.core.config import get_settings
from app.core.exceptions import UpstreamUnavailable
from app.schemas import (
    Coordinates,
    FeatureCollection,
    GeoBoundingBox,
    NearbyResponse,
    PoiSource,
    RadiusQuery,
)
from app.services import merger
from app.services.query_builder import (
    compile_overpass_around,
    compile_overpass_bbox,
    compile_primary_searches,
    resolve_filters,
)

settings = get_settings()
logger = logging.getLogger(__name__)


class PlacesService:
    """Resolve locais próximos combinando fonte primária e OSM."""

    def __init__(
        self,
        overpass: Optional[OverpassClient] = None,
        foursquare: Optional[FoursquareClient] = None,
        *,
        primary_enabled: Optional[bool] = None,
        fallback_enabled: Optional[bool] = None,
        default_categories: Optional[list[str]] = None,
    ) -> None:
        self.overpass = overpass or OverpassClient()
        self.foursquare = foursquare or FoursquareClient()
        self.primary_enabled = (
            settings.PLACES_PRIMARY_ENABLED if primary_enabled is None else primary_enabled
        )
        self.fallback_enabled = (
            settings.PLACES_FALLBACK_ENABLED if fallback_enabled is None else fallback_enabled
        )
        self.default_categories = default_categories or settings.default_categories_list

    # ── Modo raio ────────────────────────────────────────────────

    async def nearby(
        self,
        query: RadiusQuery,
        types: Optional[Iterable[str]] = None,
    ) -> NearbyResponse:
        filters = resolve_filters(list(types or []) or self.default_categories)
        center = Coordinates(lat=query.lat, lon=query.lon)
        result_sets: list[merger.SourceResult] = []
        succeeded = False

        # 1) Fonte primária (comercial)
        if self.primary_enabled and self.foursquare.enabled:
            for search in compile_primary_searches(query, filters):
                places = await self.foursquare.search(search)
                if places is None:
                    continue
                succeeded = True
                result_sets.append(merger.SourceResult(
                    source=PoiSource.PRIMARY,
                    records=places,
                    mapper=merger.foursquare_mapper(search.category, center),
                ))

        # 2) OSM / Overpass (fallback)
        failure: Optional[UpstreamUnavailable] = None
        if self.fallback_enabled:
            compiled = compile_overpass_around(query, filters)
            try:
                data = await self.overpass.fetch(compiled)
            except UpstreamUnavailable as exc:
                failure = exc
            else:
                succeeded = True
                result_sets.append(merger.SourceResult(
                    source=PoiSource.FALLBACK,
                    records=data.get("elements", []),
                    mapper=merger.overpass_mapper(filters, center),
                ))

        if not succeeded:
            raise failure or UpstreamUnavailable("nenhuma fonte de locais habilitada")
        if failure is not None:
            logger.warning("⚠️  Overpass indisponível, respondendo só com a fonte primária: %s", failure)

        features = merger.merge(result_sets, center=center)
        logger.info(
            "📍 %d locais em %.4f,%.4f r=%dm (%s)",
            len(features), query.lat, query.lon, query.radius_m,
            ",".join(filters.categories) or "permissivo",
        )
        return NearbyResponse(center=center, radius=query.radius_m, results=features)

    # ── Modo bbox ────────────────────────────────────────────────

    async def in_bbox(
        self,
        bbox: GeoBoundingBox,
        filters_raw: Optional[Iterable[str]] = None,
    ) -> FeatureCollection:
        """Somente OSM — a fonte primária exige centro + raio."""
        if not self.fallback_enabled:
            raise UpstreamUnavailable("fallback OSM desabilitado para consultas por bbox")

        filters = resolve_filters(list(filters_raw or []))
        data = await self.overpass.fetch(compile_overpass_bbox(bbox, filters))
        features = merger.merge([merger.SourceResult(
            source=PoiSource.FALLBACK,
            records=data.get("elements", []),
            mapper=merger.overpass_mapper(filters),
        )])
        return FeatureCollection(features=features)
