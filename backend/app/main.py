"""
Hayetak Places — FastAPI Application.

Ponto de entrada da aplicação. Configura logging, middleware, handlers de
erro, lifecycle hooks e registra os routers.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.routes import router
from app.core.cache import cache_service
from app.core.config import get_settings
from app.core.exceptions import PlacesError, TooManyRequests

settings = get_settings()

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("app")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle: conecta cache no startup, desconecta no shutdown."""
    logger.info("🚀 Iniciando %s...", settings.APP_NAME)
    await cache_service.connect()
    yield
    logger.info("👋 Encerrando...")
    await cache_service.close()


app = FastAPI(
    title=settings.APP_NAME,
    description="""
## Hayetak Places API

Encontra academias e nutricionistas perto do usuário ou na área visível
do mapa.

### Funcionalidades
- 🗺️ Busca por raio (Foursquare + OpenStreetMap) ou por bounding box (OSM)
- 🔁 Múltiplos mirrors Overpass com retry, backoff e jitter
- ⚡ Cache por query compilada (Redis + fallback local), com cópia stale
- 🧹 Deduplicação entre fontes
- 🚦 Rate limit por IP (20 req/min)
    """,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# CORS — permite frontend acessar a API
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PlacesError)
async def places_error_handler(request: Request, exc: PlacesError) -> JSONResponse:
    """Mensagem genérica para o cliente; o detalhe fica no log do servidor."""
    if exc.status_code >= 500:
        logger.warning("⚠️  %s %s → %d: %s", request.method, request.url.path, exc.status_code, exc)
    headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, TooManyRequests) else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=headers,
    )


# Registra todas as rotas
app.include_router(router)


@app.get("/", tags=["root"], include_in_schema=False)
async def root():
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "docs": "/docs",
    }
