"""
Rate limiting por IP em janela fixa.

Cada cliente ganha um bucket {window_start, count}; a janela reinicia a cada
`RATE_LIMIT_WINDOW_SECONDS`.  Requisições rejeitadas não consomem cota.

Os buckets vivem num `cachetools.TTLCache` — clientes que somem são
descartados sozinhos e o número de IPs rastreados fica limitado.  O relógio
é injetável para os testes avançarem a janela sem dormir.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable

from cachetools import TTLCache

from app.core.config import get_settings
from app.core.exceptions import TooManyRequests

settings = get_settings()


@dataclass
class RateLimitBucket:
    window_start: float
    count: int = 0


class RateLimiter:
    """Contador de janela fixa por chave de cliente (normalmente o IP)."""

    def __init__(
        self,
        limit: int | None = None,
        window_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        max_clients: int = 10_000,
    ) -> None:
        self.limit = settings.RATE_LIMIT_PER_MINUTE if limit is None else limit
        self.window = (
            settings.RATE_LIMIT_WINDOW_SECONDS if window_seconds is None else window_seconds
        )
        self._clock = clock
        self._buckets: TTLCache = TTLCache(
            maxsize=max_clients, ttl=self.window, timer=clock,
        )
        self._lock = threading.Lock()

    def hit(self, client_key: str) -> int:
        """
        Conta uma requisição para `client_key` e retorna quantas restam na
        janela.  Levanta `TooManyRequests` se a cota já acabou.
        """
        with self._lock:
            now = self._clock()
            bucket = self._buckets.get(client_key)
            if bucket is None or now - bucket.window_start >= self.window:
                bucket = RateLimitBucket(window_start=now)

            if bucket.count >= self.limit:
                raise TooManyRequests(retry_after=bucket.window_start + self.window - now)

            bucket.count += 1
            # Regrava para o TTL acompanhar a janela atual
            self._buckets[client_key] = bucket
            return self.limit - bucket.count

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()


# Singleton global
rate_limiter = RateLimiter()
