"""
Taxonomia de erros do serviço de locais próximos.

Erros de cliente (geometria inválida, rate limit) são terminais: nunca
passam pelo retry nem tocam o cache.  Falhas de upstream são absorvidas pelo
dispatcher de mirrors; só `UpstreamUnavailable` chega ao cliente.
"""

from typing import Optional


class PlacesError(Exception):
    """Base — `status_code` e `public_message` viram a resposta HTTP."""

    status_code: int = 500
    public_message: str = "Erro interno."

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.public_message)

    @property
    def detail(self) -> str:
        return self.public_message


class InvalidGeometry(PlacesError):
    """Coordenadas não numéricas, fora de faixa, raio inválido ou bbox grande demais."""

    status_code = 422

    @property
    def detail(self) -> str:
        # Mensagem de validação é segura para o usuário
        return str(self)


class TooManyRequests(PlacesError):
    status_code = 429
    public_message = "Muitas requisições. Aguarde um instante."

    def __init__(self, retry_after: float = 60.0) -> None:
        super().__init__()
        self.retry_after = max(1, int(round(retry_after)))


class UpstreamError(PlacesError):
    """Upstream recusou a requisição (4xx) — não adianta repetir no mesmo mirror."""

    status_code = 502
    public_message = "Locais próximos indisponíveis no momento. Aproxime o mapa ou tente novamente."

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class RetryableUpstreamFailure(UpstreamError):
    """Timeout, erro de transporte, 429, 5xx ou handshake TLS."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        tls_error: bool = False,
    ) -> None:
        super().__init__(message, status=status)
        self.tls_error = tls_error


class UpstreamUnavailable(UpstreamError):
    """Todos os mirrors esgotados e nenhum valor em cache."""

    def __init__(self, message: str = "all upstream sources failed") -> None:
        super().__init__(message)
