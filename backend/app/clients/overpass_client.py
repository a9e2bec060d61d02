"""
Cliente Overpass (OpenStreetMap) com múltiplos mirrors.

Fluxo por consulta:
  cache → mirror 1 (jitter, até 1+N tentativas com backoff)
        → mirror 2 → … → cópia stale do cache → UpstreamUnavailable

Retryable: erro de transporte/timeout, HTTP 429, 5xx, 2xx com JSON inválido.
Outros 4xx pulam direto para o próximo mirror.

TLS: se `OVERPASS_INSECURE_TLS_FALLBACK` estiver ligado, uma falha de
certificado gera UMA tentativa sem verificação no mesmo mirror, fora do loop
de retry, sempre logada.  Só para dev local — nunca em produção.

As tentativas são sequenciais (um mirror por vez): mais latência no pior
caso, mas não martela todos os mirrors públicos ao mesmo tempo.
"""

import asyncio
import logging
import random
import ssl
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

from app.clients import HTTPClient, build_verify
from app.core.cache import CacheService, cache_service
from app.core.config import get_settings
from app.core.exceptions import (
    RetryableUpstreamFailure,
    UpstreamError,
    UpstreamUnavailable,
)
from app.services.query_builder import CompiledQuery

settings = get_settings()
logger = logging.getLogger(__name__)

BODY_LOG_LIMIT = 1000


# ── Resultado de uma tentativa/mirror ────────────────────────────

@dataclass(frozen=True)
class Success:
    payload: dict[str, Any]
    endpoint: str


@dataclass(frozen=True)
class Failed:
    reason: str
    tls_error: bool = False


DispatchResult = Union[Success, Failed]


@dataclass(frozen=True)
class RetryPolicy:
    """`max_retries` tentativas extras por mirror; atraso = base * factor**n."""

    max_retries: int = 3
    base_delay: float = 1.8
    backoff_factor: float = 1.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_retries=max(0, settings.OVERPASS_RETRIES),
            base_delay=settings.OVERPASS_RETRY_DELAY_MS / 1000,
            backoff_factor=settings.OVERPASS_BACKOFF_FACTOR,
        )

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * (self.backoff_factor ** attempt)


_CERT_MARKERS = ("CERTIFICATE_VERIFY_FAILED", "certificate verify failed")


def is_tls_error(exc: BaseException) -> bool:
    """`ssl.SSLError` ou falha de verificação de certificado em qualquer ponto da cadeia."""
    seen: set[int] = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, ssl.SSLError):
            return True
        text = str(current)
        if any(marker in text for marker in _CERT_MARKERS):
            return True
        current = current.__cause__ or current.__context__
    return False


class OverpassClient:
    """Executa Overpass QL contra mirrors ranqueados, com cache e stale fallback."""

    def __init__(
        self,
        endpoints: Optional[list[str]] = None,
        cache: Optional[CacheService] = None,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None,
        cache_ttl: Optional[int] = None,
        insecure_fallback: Optional[bool] = None,
        jitter_ms: Optional[tuple[int, int]] = None,
        ca_bundle: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.endpoints = list(endpoints if endpoints is not None else settings.overpass_endpoints_list)
        self.cache = cache or cache_service
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.timeout = settings.OVERPASS_TIMEOUT if timeout is None else timeout
        self.cache_ttl = settings.CACHE_TTL if cache_ttl is None else cache_ttl
        self.insecure_fallback = (
            settings.OVERPASS_INSECURE_TLS_FALLBACK
            if insecure_fallback is None else insecure_fallback
        )
        self.jitter_ms = (
            (settings.OVERPASS_JITTER_MIN_MS, settings.OVERPASS_JITTER_MAX_MS)
            if jitter_ms is None else jitter_ms
        )
        self._transport = transport
        self._sleep = sleep
        self.ca_bundle = settings.OVERPASS_CA_BUNDLE if ca_bundle is None else ca_bundle
        self._verify: Optional[ssl.SSLContext | bool] = None

    # ── API pública ──────────────────────────────────────────────

    async def fetch(self, compiled: CompiledQuery) -> dict[str, Any]:
        """
        JSON bruto do Overpass para `compiled`.  Usa o cache antes de ir à
        rede; se todos os mirrors falharem devolve a última cópia conhecida
        (mesmo expirada) ou levanta `UpstreamUnavailable`.
        """
        key = compiled.cache_key
        hit = await self.cache.get(key)
        if hit is not None:
            logger.debug("Overpass cache hit %s", key)
            return hit

        result = await self.dispatch(compiled.text)
        if isinstance(result, Success):
            await self.cache.set(key, result.payload, self.cache_ttl)
            return result.payload

        stale = await self.cache.get_stale(key)
        if stale is not None:
            logger.warning("♻️  Stale served para %s (todos os mirrors falharam)", key)
            return stale

        raise UpstreamUnavailable(result.reason)

    async def dispatch(self, query: str) -> DispatchResult:
        """Percorre os mirrors em ordem; primeiro sucesso encerra."""
        last: DispatchResult = Failed("nenhum mirror Overpass configurado")

        for endpoint in self.endpoints:
            # Jitter evita rajadas sincronizadas quando muitos clientes dão pan/zoom
            await self._sleep(random.uniform(*self.jitter_ms) / 1000)

            outcome = await self._try_endpoint(endpoint, query)
            if isinstance(outcome, Success):
                return outcome

            if outcome.tls_error and self.insecure_fallback:
                outcome = await self._try_insecure(endpoint, query)
                if isinstance(outcome, Success):
                    return outcome

            logger.warning("⚠️  Overpass mirror esgotado: %s (%s)", endpoint, outcome.reason)
            last = outcome

        logger.error("❌ Todos os mirrors Overpass falharam (%d): %s", len(self.endpoints), last.reason)
        return last

    # ── Tentativas ───────────────────────────────────────────────

    def _tls_verify(self) -> ssl.SSLContext | bool:
        # Carregado na primeira consulta: CA inválido vira falha da requisição, não do boot
        if self._verify is None:
            self._verify = build_verify(self.ca_bundle)
        return self._verify

    async def _try_endpoint(self, endpoint: str, query: str) -> DispatchResult:
        policy = self.retry_policy
        failure = Failed(f"{endpoint}: sem tentativas")

        async with HTTPClient(
            timeout=self.timeout,
            verify=self._tls_verify(),
            user_agent=settings.OVERPASS_USER_AGENT,
            transport=self._transport,
        ) as http:
            for attempt in range(policy.max_retries + 1):
                try:
                    return Success(await self._post(http, endpoint, query), endpoint)
                except RetryableUpstreamFailure as exc:
                    logger.warning(
                        "⚠️  Overpass tentativa %d/%d falhou: %s",
                        attempt + 1, policy.max_retries + 1, exc,
                    )
                    if exc.tls_error and self.insecure_fallback:
                        # Sai do loop; o caminho inseguro é tratado à parte
                        return Failed(str(exc), tls_error=True)
                    failure = Failed(str(exc))
                except UpstreamError as exc:
                    logger.warning("⚠️  Overpass recusou a consulta: %s", exc)
                    return Failed(str(exc))

                if attempt < policy.max_retries:
                    await self._sleep(policy.delay_for(attempt))

        return failure

    async def _try_insecure(self, endpoint: str, query: str) -> DispatchResult:
        logger.warning(
            "⚠️  Overpass: verificação TLS falhou em %s; tentando UMA vez sem verificar "
            "(OVERPASS_INSECURE_TLS_FALLBACK ligado — só dev local)",
            endpoint,
        )
        async with HTTPClient(
            timeout=self.timeout,
            verify=False,
            user_agent=settings.OVERPASS_USER_AGENT,
            transport=self._transport,
        ) as http:
            try:
                return Success(await self._post(http, endpoint, query), endpoint)
            except UpstreamError as exc:
                logger.warning("⚠️  Overpass tentativa insegura falhou: %s", exc)
                return Failed(str(exc))

    @staticmethod
    async def _post(http: HTTPClient, endpoint: str, query: str) -> dict[str, Any]:
        try:
            resp = await http.post_form(endpoint, {"data": query})
        except httpx.HTTPError as exc:
            raise RetryableUpstreamFailure(
                f"{endpoint}: {type(exc).__name__}: {exc}",
                tls_error=is_tls_error(exc),
            ) from exc

        status = resp.status_code
        if status == 429 or 500 <= status < 600:
            raise RetryableUpstreamFailure(
                f"{endpoint}: HTTP {status}: {resp.text[:BODY_LOG_LIMIT]}",
                status=status,
            )
        if not resp.is_success:
            raise UpstreamError(
                f"{endpoint}: HTTP {status}: {resp.text[:BODY_LOG_LIMIT]}",
                status=status,
            )

        try:
            payload = resp.json()
        except ValueError as exc:
            raise RetryableUpstreamFailure(f"{endpoint}: JSON inválido ({exc})", status=status) from exc
        if not isinstance(payload, dict) or "elements" not in payload:
            raise RetryableUpstreamFailure(f"{endpoint}: resposta sem 'elements'", status=status)
        return payload
