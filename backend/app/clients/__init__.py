"""
Cliente HTTP assíncrono reutilizável.

Por que httpx?
  - API compatível com requests, mas com suporte nativo a async/await
  - Connection pooling, timeouts granulares, controle de verificação TLS
  - `transport` injetável → testes usam httpx.MockTransport sem rede
"""

import ssl
from typing import Any, Optional

import httpx

from app.core.config import get_settings

settings = get_settings()


def build_verify(ca_bundle: str = "") -> ssl.SSLContext | bool:
    """Contexto TLS com CA explícito (quando configurado) ou verificação padrão."""
    if ca_bundle:
        return ssl.create_default_context(cafile=ca_bundle)
    return True


class HTTPClient:
    """Context-manager que fornece um httpx.AsyncClient configurado."""

    def __init__(
        self,
        timeout: float | None = None,
        verify: ssl.SSLContext | bool = True,
        user_agent: str | None = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeout = settings.HTTP_TIMEOUT if timeout is None else timeout
        self._verify = verify
        self._user_agent = user_agent or f"{settings.APP_NAME}/{settings.APP_VERSION}"
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "HTTPClient":
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(self._timeout),
            limits=httpx.Limits(
                max_keepalive_connections=20,
                max_connections=100,
            ),
            headers={"User-Agent": self._user_agent},
            verify=self._verify,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if self.client:
            await self.client.aclose()

    async def get(
        self,
        url: str,
        params: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Any:
        """GET com tratamento de erros padronizado."""
        assert self.client, "Use dentro de 'async with HTTPClient() as c:'"
        resp = await self.client.get(url, params=params, headers=headers)
        resp.raise_for_status()
        return resp.json()

    async def post_form(
        self,
        url: str,
        data: dict[str, Any],
        headers: Optional[dict[str, str]] = None,
    ) -> httpx.Response:
        """POST form-encoded sem raise — quem chama decide o que é retryable."""
        assert self.client, "Use dentro de 'async with HTTPClient() as c:'"
        return await self.client.post(url, data=data, headers=headers)
