import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from loadops.app.api.v1.router import router as v1_router
from loadops.services.artifacts import artifact_store_from_env
from loadops.services.errors import LoadingError, OwnershipPendingError, PersistenceError
from loadops.services.lifecycle import LoadingLifecycle

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # une seule instance par processus : le registre des avances en cours est partagé
    app.state.lifecycle = LoadingLifecycle(artifact_store_from_env())
    logger.info("Artifact store: %s", type(app.state.lifecycle.store).__name__)
    yield


app = FastAPI(title="LOADOPS Carregamentos", version="0.1.0", lifespan=lifespan)
app.include_router(v1_router, prefix="/v1")


@app.exception_handler(LoadingError)
async def loading_error_handler(request: Request, exc: LoadingError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    body = {"detail": exc.message, "error": type(exc).__name__}
    if isinstance(exc, PersistenceError) and exc.orphaned_urls:
        body["orphaned_urls"] = exc.orphaned_urls
    headers = {"Retry-After": "1"} if isinstance(exc, OwnershipPendingError) else None
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)
