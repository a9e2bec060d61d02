"""
Configuração centralizada via Pydantic Settings.

Todas as variáveis são lidas de variáveis de ambiente ou de um arquivo .env
na raiz do backend.  Nunca commite o .env real — use .env.example como
template.

Por que pydantic-settings?
  - Validação automática de tipos (int, bool, float, etc.)
  - Suporte nativo a .env files
  - Singleton via lru_cache → instância única em toda a aplicação
"""

from functools import lru_cache
from pydantic_settings import BaseSettings


def _csv(value: str) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


class Settings(BaseSettings):
    """Configurações da aplicação — carregar do .env ou variáveis de ambiente."""

    # ── App ──────────────────────────────────────────────────────────
    APP_NAME: str = "Hayetak Places API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # ── CORS ─────────────────────────────────────────────────────────
    CORS_ORIGINS: str = (
        "http://localhost:5173,"
        "http://localhost:3000,"
        "http://127.0.0.1:5173,"
        "http://127.0.0.1:3000"
    )

    @property
    def cors_origins_list(self) -> list[str]:
        """Converte a string separada por vírgulas em uma lista."""
        return _csv(self.CORS_ORIGINS)

    # ── Redis / Cache ────────────────────────────────────────────────
    REDIS_URL: str = "redis://localhost:6379/0"
    CACHE_TTL: int = 21600            # 6 h
    CACHE_STALE_TTL: int = 604800     # 7 dias; cópia servida se todos os mirrors caírem
    LOCAL_CACHE_MAX_ENTRIES: int = 1000

    # ── Rate-Limiting ────────────────────────────────────────────────
    RATE_LIMIT_PER_MINUTE: int = 20
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    TRUST_PROXY_HEADERS: bool = False    # usa X-Forwarded-For (atrás de nginx/ALB)

    # ── Overpass (OpenStreetMap) ─────────────────────────────────────
    # Ordem = prioridade. kumi.systems por último (DNS instável).
    OVERPASS_ENDPOINTS: str = (
        "https://overpass-api.de/api/interpreter,"
        "https://overpass.openstreetmap.fr/api/interpreter,"
        "https://overpass.kumi.systems/api/interpreter"
    )
    OVERPASS_TIMEOUT: float = 20.0           # por tentativa, em segundos
    OVERPASS_RETRIES: int = 3                # tentativas extras por mirror
    OVERPASS_RETRY_DELAY_MS: int = 1800
    OVERPASS_BACKOFF_FACTOR: float = 1.0     # 1.0 = atraso fixo, 2.0 = exponencial
    OVERPASS_JITTER_MIN_MS: int = 100
    OVERPASS_JITTER_MAX_MS: int = 300
    OVERPASS_INSECURE_TLS_FALLBACK: bool = False   # NUNCA ligar em produção
    OVERPASS_CA_BUNDLE: str = ""
    OVERPASS_USER_AGENT: str = "Hayetak/1.0 (+contact)"
    OVERPASS_QUERY_TIMEOUT: int = 25         # [timeout:N] dentro do Overpass QL
    OVERPASS_RESULT_LIMIT: int = 50

    @property
    def overpass_endpoints_list(self) -> list[str]:
        return _csv(self.OVERPASS_ENDPOINTS)

    # ── Foursquare (fonte primária, opcional) ────────────────────────
    FOURSQUARE_API_KEY: str = ""
    FOURSQUARE_BASE_URL: str = "https://api.foursquare.com/v3"
    FOURSQUARE_LIMIT: int = 50

    # ── Mistura de fontes ────────────────────────────────────────────
    PLACES_PRIMARY_ENABLED: bool = True      # só vale se FOURSQUARE_API_KEY existir
    PLACES_FALLBACK_ENABLED: bool = True

    # ── Limites geográficos ──────────────────────────────────────────
    MIN_RADIUS_M: int = 200
    MAX_RADIUS_M: int = 5000
    DEFAULT_RADIUS_M: int = 1500
    MAX_BBOX_SPAN_DEG: float = 0.5
    DEFAULT_CATEGORIES: str = "gym,nutritionist"

    @property
    def default_categories_list(self) -> list[str]:
        return _csv(self.DEFAULT_CATEGORIES)

    # ── Timeouts ─────────────────────────────────────────────────────
    HTTP_TIMEOUT: int = 30

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
        "extra": "ignore",
    }


@lru_cache()
def get_settings() -> Settings:
    """Retorna singleton de Settings (cacheado por lru_cache)."""
    return Settings()
