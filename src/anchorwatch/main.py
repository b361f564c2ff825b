"""AnchorWatch application entrypoint."""

import base64
import logging
import secrets
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from anchorwatch import database
from anchorwatch.config import Settings, load_config, settings
from anchorwatch.device import DeviceRuntime
from anchorwatch.errors import AnchorWatchError
from anchorwatch.gps.background import SimulatedBackgroundTracker
from anchorwatch.gps.base import BaseGpsProvider
from anchorwatch.gps.mock import MockGpsProvider
from anchorwatch.remote.base import RemoteStore
from anchorwatch.remote.memory import InMemoryDatabase, InMemoryStore

logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger(__name__)

# Shared by every in-process device when remote_mode is "memory"
memory_database = InMemoryDatabase()


def _create_gps_provider(cfg: Settings) -> BaseGpsProvider:
    if cfg.gps_mode not in ("mock", "none"):
        logger.warning("Unknown GPS mode '%s', using mock", cfg.gps_mode)
    return MockGpsProvider(latitude=cfg.mock_latitude, longitude=cfg.mock_longitude)


def _create_remote_store(cfg: Settings) -> RemoteStore:
    """Factory: instantiate the configured remote store backend."""
    if cfg.remote_mode == "firebase":
        from anchorwatch.remote.firebase import RealtimeDatabaseStore

        if cfg.remote_url and cfg.remote_api_key:
            return RealtimeDatabaseStore(database_url=cfg.remote_url, api_key=cfg.remote_api_key)
        logger.warning("Firebase mode selected but remote_url/remote_api_key not configured")
    elif cfg.remote_mode != "memory":
        logger.warning("Unknown remote mode '%s', using in-memory store", cfg.remote_mode)
    return InMemoryStore(memory_database)


def build_runtime(cfg: Settings) -> DeviceRuntime:
    provider = _create_gps_provider(cfg)
    return DeviceRuntime(
        cfg,
        database.engine,
        provider,
        _create_remote_store(cfg),
        background=SimulatedBackgroundTracker(provider),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application startup/shutdown lifecycle."""
    # Import models to register them with SQLModel before init_db()
    import anchorwatch.anchor.models  # noqa: F401
    import anchorwatch.pairing.models  # noqa: F401

    database.init_db()
    logger.info("Database initialized")

    cfg = load_config()
    runtime = build_runtime(cfg)
    await runtime.start(track_gps=cfg.gps_mode != "none")
    app.state.runtime = runtime

    yield

    await runtime.stop()


app = FastAPI(
    title="AnchorWatch",
    description="Anchor drift alarm with paired-device session sync",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(AnchorWatchError)
async def anchorwatch_error_handler(request: Request, exc: AnchorWatchError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": exc.errors(include_url=False)})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc)})


class BasicAuthMiddleware(BaseHTTPMiddleware):
    """HTTP Basic Authentication for every route except /health."""

    def __init__(self, app, username: str, password: str):
        super().__init__(app)
        self.username = username
        self.password = password

    async def dispatch(self, request, call_next):
        if request.url.path == "/health":
            return await call_next(request)

        scheme, _, encoded = request.headers.get("Authorization", "").partition(" ")
        if scheme != "Basic":
            return self._challenge()
        try:
            user, _, password = base64.b64decode(encoded).decode("utf-8").partition(":")
        except ValueError:
            return self._challenge()

        # Compare both so timing does not reveal which one was wrong
        user_ok = secrets.compare_digest(user, self.username)
        password_ok = secrets.compare_digest(password, self.password)
        if not (user_ok and password_ok):
            return self._challenge()
        return await call_next(request)

    def _challenge(self) -> Response:
        return Response(
            content="Unauthorized",
            status_code=401,
            headers={"WWW-Authenticate": 'Basic realm="AnchorWatch"'},
        )


if settings.auth_password:
    app.add_middleware(
        BasicAuthMiddleware, username=settings.auth_username, password=settings.auth_password
    )
    logger.info("HTTP Basic Auth enabled")


from anchorwatch.api.routes import router as api_router  # noqa: E402

app.include_router(api_router)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


def main() -> None:
    import uvicorn

    logger.info("Starting AnchorWatch on %s:%d", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
