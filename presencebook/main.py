import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

import docstore.db as db
from presencebook import config
from presencebook.errors import (
    ActivityNotFoundError,
    ActorNotPermittedError,
    ChildNotFoundError,
    GuardianAlreadyLinkedError,
    GuardianNotLinkedError,
    InvalidTransitionError,
    PayloadTooLargeError,
    RemoteUnavailableError,
    StatusProjectionError,
    UserNotFoundError,
    ValidationFailedError,
)
from presencebook.routers import activities, admin, auth, children, core, presence
from presencebook.services.media import LocalBlobStore

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    db.create_tables()
    config.MEDIA_DIR.mkdir(parents=True, exist_ok=True)
    app.state.store = db.DocumentStore(db.DB_PATH)
    app.state.blob_store = LocalBlobStore(config.MEDIA_DIR)
    logger.info("Document store ready at %s", db.DB_PATH)
    yield


app = FastAPI(title="Presencebook API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=config.CORS_ALLOW_CREDENTIALS,
    allow_methods=config.CORS_ALLOW_METHODS,
    allow_headers=config.CORS_ALLOW_HEADERS,
)


# -----------------------------
# Error mapping
# -----------------------------
@app.exception_handler(ActorNotPermittedError)
async def _not_permitted(_request: Request, exc: ActorNotPermittedError):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(InvalidTransitionError)
async def _invalid_transition(_request: Request, exc: InvalidTransitionError):
    return JSONResponse(
        status_code=409,
        content={
            "detail": str(exc),
            "current_status": exc.current_status,
            "action": exc.action,
        },
    )


@app.exception_handler(ChildNotFoundError)
@app.exception_handler(ActivityNotFoundError)
@app.exception_handler(UserNotFoundError)
@app.exception_handler(GuardianNotLinkedError)
async def _not_found(_request: Request, exc: LookupError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(PayloadTooLargeError)
async def _payload_too_large(_request: Request, exc: PayloadTooLargeError):
    return JSONResponse(
        status_code=413,
        content={"detail": str(exc), "size": exc.size, "limit": exc.limit},
    )


@app.exception_handler(RemoteUnavailableError)
async def _remote_unavailable(_request: Request, exc: RemoteUnavailableError):
    content = {
        "detail": "The service could not reach its datastore. Please retry.",
        "retryable": exc.retryable,
        "site": exc.site,
        "kind": exc.kind,
    }
    if isinstance(exc, StatusProjectionError):
        content["log_entry_id"] = exc.log_entry_id
        content["detail"] = "The transition was logged but the current status could not be updated. Please retry."
    return JSONResponse(status_code=503, content=content)


@app.exception_handler(GuardianAlreadyLinkedError)
async def _already_linked(_request: Request, exc: GuardianAlreadyLinkedError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(ValidationFailedError)
async def _bad_value(_request: Request, exc: ValidationFailedError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


app.include_router(core.router)
app.include_router(auth.router)
app.include_router(children.router)
app.include_router(presence.router)
app.include_router(activities.router)
app.include_router(admin.router)

app.mount(config.MEDIA_BASE_URL, StaticFiles(directory=config.MEDIA_DIR, check_dir=False), name="media")
