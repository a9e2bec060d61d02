"""
Cache de resultados upstream com Redis + fallback para memória local.

Por que Redis?
  - Persistência entre restarts da API
  - Compartilhamento entre workers (gunicorn/uvicorn)
  - TTL nativo por chave

Cada `set` grava duas cópias: a chave normal (TTL curto, `CACHE_TTL`) e
`stale:<chave>` (TTL longo, `CACHE_STALE_TTL`).  A cópia stale só é lida
quando todos os mirrors falham.

Se o Redis não estiver disponível (e.g. dev local sem Docker), o fallback
usa um dict em memória — funcional mas perde dados ao reiniciar.
"""

import hashlib
import json
import logging
import time
from typing import Any, Callable, Optional

from app.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

STALE_PREFIX = "stale:"


class CacheService:
    """Gerencia cache Redis com fallback em memória."""

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        max_local_entries: int | None = None,
        stale_ttl: int | None = None,
    ) -> None:
        self.redis_client = None
        self._clock = clock
        self._max_local = (
            settings.LOCAL_CACHE_MAX_ENTRIES if max_local_entries is None else max_local_entries
        )
        self._stale_ttl = settings.CACHE_STALE_TTL if stale_ttl is None else stale_ttl
        # Fallback em memória: {key: (expire_timestamp, value)}
        # Entradas expiradas ficam até serem substituídas/evictadas (servem de stale).
        self._local: dict[str, tuple[float, Any]] = {}
        self.hits = 0
        self.misses = 0
        self.stale_hits = 0

    # ── Lifecycle ────────────────────────────────────────────────────

    async def connect(self) -> None:
        """Tenta conectar ao Redis; falha para fallback local."""
        try:
            import redis.asyncio as aioredis

            self.redis_client = aioredis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True,
            )
            await self.redis_client.ping()
            logger.info("✅ Redis conectado")
        except Exception as exc:
            logger.warning("⚠️  Redis indisponível (%s). Usando cache local.", exc)
            self.redis_client = None

    async def close(self) -> None:
        if self.redis_client:
            await self.redis_client.aclose()

    async def is_connected(self) -> bool:
        if not self.redis_client:
            return False
        try:
            await self.redis_client.ping()
            return True
        except Exception:
            return False

    # ── CRUD ─────────────────────────────────────────────────────────

    async def get(self, key: str) -> Optional[Any]:
        value = await self._read(key, allow_expired=False)
        if value is None:
            self.misses += 1
        else:
            self.hits += 1
        return value

    async def get_stale(self, key: str) -> Optional[Any]:
        """Qualquer valor já gravado para `key`, mesmo expirado."""
        value = await self._read(STALE_PREFIX + key, allow_expired=True)
        if value is not None:
            self.stale_hits += 1
        return value

    async def set(self, key: str, value: Any, ttl: int = settings.CACHE_TTL) -> None:
        try:
            serialized = json.dumps(value, default=str)
            if self.redis_client:
                async with self.redis_client.pipeline(transaction=False) as pipe:
                    # SETEX recusa TTL 0; só a cópia stale é gravada
                    if ttl > 0:
                        pipe.setex(key, ttl, serialized)
                    pipe.setex(STALE_PREFIX + key, max(ttl, self._stale_ttl), serialized)
                    await pipe.execute()
            else:
                self._store_local(key, ttl, json.loads(serialized))
        except Exception as exc:
            logger.warning("⚠️  Erro ao gravar cache (%s): %s", key, exc)

    async def delete(self, key: str) -> None:
        try:
            if self.redis_client:
                await self.redis_client.delete(key, STALE_PREFIX + key)
            else:
                self._local.pop(key, None)
        except Exception as exc:
            logger.warning("⚠️  Erro ao remover cache (%s): %s", key, exc)

    # ── Internos ─────────────────────────────────────────────────────

    async def _read(self, key: str, allow_expired: bool) -> Optional[Any]:
        try:
            if self.redis_client:
                raw = await self.redis_client.get(key)
                return json.loads(raw) if raw else None
            local_key = key[len(STALE_PREFIX):] if key.startswith(STALE_PREFIX) else key
            entry = self._local.get(local_key)
            if entry is None:
                return None
            expires_at, value = entry
            if allow_expired or expires_at > self._clock():
                return value
            return None
        except Exception as exc:
            logger.warning("⚠️  Erro ao ler cache (%s): %s", key, exc)
            return None

    def _store_local(self, key: str, ttl: int, value: Any) -> None:
        # Reinsere no fim → dict vira fila por ordem de escrita
        self._local.pop(key, None)
        self._local[key] = (self._clock() + ttl, value)
        while len(self._local) > self._max_local:
            oldest = next(iter(self._local))
            del self._local[oldest]

    # ── Helpers ──────────────────────────────────────────────────────

    @staticmethod
    def make_key(namespace: str, text: str) -> str:
        """Hash MD5 determinístico do texto da query."""
        return f"{namespace}:{hashlib.md5(text.encode()).hexdigest()}"


# Singleton global
cache_service = CacheService()
