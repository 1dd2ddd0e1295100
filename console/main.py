"""
Broker Console - FastAPI Application
======================================
Creates and configures the FastAPI web application served by the
management listener.

Responsibilities:
    - Create the FastAPI app instance with CORS and metadata
    - Register the /api/v1 router (routes.py)
    - Render every error as {"error": "<message>"} with its status code
    - Serve the bundled UI from console/dist with single-page fallback

Static assets:
    A path that names a file under dist/ is served as that file. Any other
    path outside /api/ gets dist/index.html so the client-side router can
    handle it. Unmatched /api/ paths get a JSON 404 instead.
"""

import os

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.routing import APIRoute
from starlette.exceptions import HTTPException as StarletteHTTPException

from console.auth import TokenService
from console.discovery import DiscoveryAdvertiser
from console.errors import ConsoleError, NotFoundError
from console.hub import ConnectionHub
from console.ledger import CredentialLedger
from console.listeners import ListenerRegistry
from console.routes import create_router
from console.settings import SettingsStore
from console.storage import StorageBackend


DIST_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "dist")
ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def create_app(
    token_service: TokenService,
    ledger: CredentialLedger,
    registry: ListenerRegistry,
    settings: SettingsStore,
    advertiser: DiscoveryAdvertiser,
    hub: ConnectionHub,
    storage: StorageBackend | None,
    data_dir: str,
    dist_dir: str | None = None,
) -> FastAPI:
    """
    Application factory: create and configure the FastAPI instance.

    Components are passed in rather than built here so the same factory
    serves production wiring (service.py) and tests.

    Args:
        dist_dir: Root of the bundled UI; defaults to console/dist.

    Returns:
        Configured FastAPI application.
    """
    dist_dir = dist_dir or DIST_DIR
    index_file = os.path.join(dist_dir, "index.html")

    app = FastAPI(
        title="Broker Console",
        description="Runtime management console for the MQTT broker",
        version="2.0.0",
        docs_url="/api/docs",
        redoc_url=None,
        openapi_url="/api/openapi.json",
    )

    # -- CORS middleware -------------------------------------------------------
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -- Error rendering -------------------------------------------------------
    @app.exception_handler(ConsoleError)
    async def console_error_handler(request: Request, exc: ConsoleError):
        return JSONResponse({"error": exc.message}, status_code=exc.status_code)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            {"error": str(exc.detail)},
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse({"error": _describe_validation(exc)}, status_code=400)

    # -- Register API routes ---------------------------------------------------
    app.include_router(create_router(
        token_service=token_service,
        ledger=ledger,
        registry=registry,
        settings=settings,
        advertiser=advertiser,
        hub=hub,
        storage=storage,
        data_dir=data_dir,
    ))

    # -- Static UI with SPA fallback -------------------------------------------
    @app.api_route("/api/{rest:path}", methods=ALL_METHODS, include_in_schema=False)
    async def api_not_found(request: Request, rest: str):
        allowed = _allowed_methods(app, request.scope["path"])
        if allowed:
            raise StarletteHTTPException(
                status_code=405,
                detail="method not allowed",
                headers={"Allow": ", ".join(sorted(allowed))},
            )
        raise NotFoundError("not found")

    @app.get("/{path:path}", include_in_schema=False)
    async def static_files(path: str):
        target = _resolve_asset(dist_dir, path)
        if target is not None:
            return FileResponse(target)
        if not os.path.isfile(index_file):
            raise NotFoundError("ui not bundled")
        return FileResponse(index_file)

    return app


def _allowed_methods(app: FastAPI, path: str) -> set[str]:
    """Methods of the API routes whose path pattern matches path."""
    allowed = set()
    for route in app.routes:
        if isinstance(route, APIRoute) and route.include_in_schema and route.path_regex.match(path):
            allowed.update(route.methods)
    return allowed


def _resolve_asset(root: str, path: str) -> str | None:
    """Map a URL path to a file under root, refusing escapes via '..'."""
    if not path:
        return None
    root_real = os.path.realpath(root)
    candidate = os.path.realpath(os.path.join(root_real, path))
    if os.path.commonpath([candidate, root_real]) != root_real:
        return None
    if not os.path.isfile(candidate):
        return None
    return candidate


def _describe_validation(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "invalid request"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ())[1:])
    message = first.get("msg", "invalid request")
    return f"{location}: {message}" if location else message
