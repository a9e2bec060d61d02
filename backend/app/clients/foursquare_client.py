"""
Cliente Foursquare Places (fonte primária, requer FOURSQUARE_API_KEY).

Uma busca por categoria, ordenada por distância.  Falhas aqui nunca
derrubam a requisição: o OSM/Overpass cobre como fallback.
"""

import logging
from typing import Any, Optional

import httpx

from app.clients import HTTPClient
from app.core.cache import CacheService, cache_service
from app.core.config import get_settings
from app.services.query_builder import CompiledQuery

settings = get_settings()
logger = logging.getLogger(__name__)


class FoursquareClient:
    """Busca locais via Foursquare Places API v3."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        cache: Optional[CacheService] = None,
        *,
        base_url: Optional[str] = None,
        cache_ttl: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = settings.FOURSQUARE_API_KEY if api_key is None else api_key
        self.base_url = (base_url or settings.FOURSQUARE_BASE_URL).rstrip("/")
        self.cache = cache or cache_service
        self.cache_ttl = settings.CACHE_TTL if cache_ttl is None else cache_ttl
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(self, compiled: CompiledQuery) -> Optional[list[dict[str, Any]]]:
        """
        Lista `results` crua da API, ou None se a chamada falhou.
        Lista vazia é sucesso (nenhum local na área).
        """
        if not self.enabled:
            return None

        key = compiled.cache_key
        hit = await self.cache.get(key)
        if hit is not None:
            return hit

        try:
            async with HTTPClient(transport=self._transport) as http:
                data = await http.get(
                    f"{self.base_url}/places/search",
                    params=dict(compiled.params),
                    headers={
                        "Authorization": self.api_key,
                        "Accept": "application/json",
                    },
                )
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("⚠️  Foursquare falhou (%s): %s", compiled.category, exc)
            return None

        results = data.get("results", []) if isinstance(data, dict) else []
        await self.cache.set(key, results, self.cache_ttl)
        return results
