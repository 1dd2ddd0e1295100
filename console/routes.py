"""
Broker Console - REST API Routes
==================================
All HTTP API endpoints of the management console, under /api/v1.

Route groups:
    /login, /refresh           - Session tokens                 (public)
    /install/check, /install   - First-run admin creation       (public)
    /listeners                 - List / create / delete listeners
    /users                     - Credential ledger management
    /stats                     - Broker statistics snapshot
    /storage/*                 - Stored clients, subscriptions, retained messages
    /settings                  - Discovery and TLS settings

Everything except the public group requires a valid access token.
See auth.py for authentication details.
"""

import logging
import os
import ssl
import threading

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from console.auth import TokenService, require_auth
from console.discovery import AdvertiseError, DiscoveryAdvertiser
from console.errors import (
    ConflictError,
    InternalError,
    NotFoundError,
    UnavailableError,
    ValidationError,
)
from console.hub import ConnectionHub
from console.ledger import CredentialLedger
from console.listeners import (
    ListenerInfo,
    ListenerKind,
    ListenerRegistry,
    build_ssl_context,
    parse_address,
)
from console.settings import DiscoveryConfig, SettingsStore, TLSConfig
from console.storage import StorageBackend


logger = logging.getLogger(__name__)

INSTALL_MARKER = "install.lock"


# =============================================================================
# Request/Response Models (Pydantic)
# =============================================================================

class LoginRequest(BaseModel):
    """Login with an admin username and password."""
    username: str
    password: str

class RefreshRequest(BaseModel):
    refresh_token: str

class TokenResponse(BaseModel):
    """Token pair returned by login and refresh."""
    access_token: str
    refresh_token: str

class InstallRequest(BaseModel):
    """First-run setup: the initial administrator."""
    username: str = Field(..., min_length=1, description="Admin username")
    password: str = Field(..., min_length=1, description="Admin password")

class ListenerCreateRequest(BaseModel):
    type: str = Field(..., description="Listener kind: tcp or ws")
    id: str = Field(..., min_length=1, description="Unique listener id")
    address: str = Field(..., description="Bind address, host:port")

class UserRequest(BaseModel):
    """Create or replace a ledger user."""
    username: str = Field(..., min_length=1)
    password: str = Field("", description="Empty keeps the stored secret on update")
    allow: bool = True
    remarks: str = ""
    is_admin: bool = False

class UserResponse(BaseModel):
    """A ledger user without its secret."""
    username: str
    disallowed: bool
    is_admin: bool
    remarks: str


# =============================================================================
# Router Factory
# =============================================================================

def create_router(
    token_service: TokenService,
    ledger: CredentialLedger,
    registry: ListenerRegistry,
    settings: SettingsStore,
    advertiser: DiscoveryAdvertiser,
    hub: ConnectionHub,
    storage: StorageBackend | None,
    data_dir: str,
) -> APIRouter:
    """
    Create and configure the API router with all endpoints.

    Args:
        token_service: Issues and validates session tokens.
        ledger:        Credential ledger (users).
        registry:      Live listener registry.
        settings:      Persisted discovery/TLS settings.
        advertiser:    mDNS broadcast, reconfigured on settings change.
        hub:           Broker connection hub, source of statistics.
        storage:       Persistent store surface, or None if not wired.
        data_dir:      Directory holding the install marker.

    Returns:
        Configured APIRouter with all endpoints registered.
    """
    router = APIRouter(prefix="/api/v1")

    # Shorthand for the auth dependency
    auth = Depends(require_auth(token_service))

    install_marker = os.path.join(data_dir, INSTALL_MARKER)
    install_lock = threading.Lock()
    discovery_lock = threading.Lock()

    def require_storage() -> StorageBackend:
        if storage is None:
            raise UnavailableError("storage not initialized")
        return storage

    # =========================================================================
    # SESSION ROUTES - No authentication required
    # =========================================================================

    @router.post("/login", response_model=TokenResponse)
    def login(req: LoginRequest):
        """Exchange admin credentials for an access/refresh token pair."""
        pair = token_service.login(req.username, req.password)
        return TokenResponse(access_token=pair.access_token, refresh_token=pair.refresh_token)

    @router.post("/refresh", response_model=TokenResponse)
    def refresh(req: RefreshRequest):
        """Issue a new token pair from a still-valid refresh token."""
        pair = token_service.refresh(req.refresh_token)
        return TokenResponse(access_token=pair.access_token, refresh_token=pair.refresh_token)

    # =========================================================================
    # INSTALL ROUTES - No authentication required
    # =========================================================================

    @router.get("/install/check")
    def install_check():
        """Report whether first-run setup has been completed."""
        return {"installed": os.path.exists(install_marker)}

    @router.post("/install")
    def install(req: InstallRequest):
        """
        Create the first administrator, then write the install marker.

        The marker check, user creation and marker write run under one lock
        so concurrent first-run requests cannot both create an admin.
        """
        with install_lock:
            if os.path.exists(install_marker):
                raise ConflictError("installation already completed", status_code=403)

            try:
                ledger.add_user(req.username, req.password, True, "Super Admin", True)
            except ValueError as e:
                raise ValidationError(str(e)) from e
            except OSError as e:
                raise InternalError(f"failed to save user: {e}") from e

            try:
                os.makedirs(data_dir, exist_ok=True)
                with open(install_marker, "w", encoding="utf-8"):
                    pass
            except OSError as e:
                raise InternalError(f"failed to create lock file: {e}") from e

        logger.info("installation completed, admin user %s created", req.username)
        return {"status": "ok"}

    # =========================================================================
    # LISTENER ROUTES - Requires authentication
    # =========================================================================

    @router.get("/listeners", dependencies=[auth], response_model=list[ListenerInfo])
    async def list_listeners():
        return registry.list()

    @router.post("/listeners", dependencies=[auth], status_code=201)
    async def create_listener(req: ListenerCreateRequest):
        """Bind a new TCP or websocket listener and start serving it."""
        info = await registry.create(req.type, req.id, req.address)
        return {"status": "ok", "listener": info}

    @router.delete("/listeners/{listener_id}", dependencies=[auth])
    async def delete_listener(listener_id: str):
        """Stop and remove a listener. Unknown ids succeed silently."""
        listener = registry.get(listener_id)
        if listener is not None and listener.kind is ListenerKind.MANAGEMENT:
            raise ConflictError("the management listener cannot be removed")
        await registry.delete(listener_id)
        return {"status": "ok"}

    # =========================================================================
    # USER ROUTES - Requires authentication
    # =========================================================================

    @router.get("/users", dependencies=[auth], response_model=list[UserResponse])
    def list_users():
        return [
            UserResponse(
                username=u.username,
                disallowed=u.disallowed,
                is_admin=u.is_admin,
                remarks=u.remarks,
            )
            for u in ledger.get_users()
        ]

    @router.api_route("/users", methods=["POST", "PUT"], dependencies=[auth], status_code=201)
    def save_user(req: UserRequest):
        """Create a user, or replace an existing one with the same name."""
        try:
            ledger.add_user(req.username, req.password, req.allow, req.remarks, req.is_admin)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        except OSError as e:
            raise InternalError(f"failed to save user: {e}") from e
        return {"status": "ok"}

    @router.delete("/users/{username}", dependencies=[auth])
    def delete_user(username: str):
        try:
            ledger.remove_user(username)
        except KeyError:
            raise NotFoundError(f"user {username!r} not found") from None
        except OSError as e:
            raise InternalError(f"failed to save users: {e}") from e
        return {"status": "ok"}

    # =========================================================================
    # STATS ROUTE - Requires authentication
    # =========================================================================

    @router.get("/stats", dependencies=[auth])
    async def stats():
        snapshot = hub.stats()
        snapshot["listeners"] = len(registry)
        return snapshot

    # =========================================================================
    # STORAGE ROUTES - Requires authentication
    # =========================================================================

    @router.get("/storage/clients", dependencies=[auth])
    def stored_clients():
        return require_storage().stored_clients()

    @router.delete("/storage/clients/{client_id}", dependencies=[auth])
    def delete_stored_client(client_id: str):
        require_storage().delete_client(client_id)
        return {"status": "ok"}

    @router.get("/storage/subscriptions", dependencies=[auth])
    def stored_subscriptions():
        return require_storage().stored_subscriptions()

    @router.delete("/storage/subscriptions", dependencies=[auth])
    def delete_stored_subscription(
        client: str = Query(""),
        topic_filter: str = Query("", alias="filter"),
    ):
        backend = require_storage()
        if not client or not topic_filter:
            raise ValidationError("missing client or filter")
        backend.delete_subscription(client, topic_filter)
        return {"status": "ok"}

    @router.get("/storage/retained", dependencies=[auth])
    def stored_retained():
        return require_storage().stored_retained_messages()

    @router.delete("/storage/retained", dependencies=[auth])
    def delete_stored_retained(topic: str = Query("")):
        backend = require_storage()
        if not topic:
            raise ValidationError("missing topic")
        backend.delete_retained(topic)
        return {"status": "ok"}

    # =========================================================================
    # SETTINGS ROUTES - Requires authentication
    # =========================================================================

    @router.get("/settings", dependencies=[auth])
    def get_settings():
        return settings.snapshot().model_dump()

    @router.put("/settings/discovery", dependencies=[auth])
    def update_discovery(cfg: DiscoveryConfig):
        """
        Persist discovery settings and apply them to the broadcast.
        The stored and advertised configuration change together or not at all.
        """
        with discovery_lock:
            previous = settings.get_discovery()
            try:
                settings.update_discovery(cfg)
            except OSError as e:
                raise InternalError(f"failed to save settings: {e}") from e

            try:
                advertiser.configure(cfg.enabled, cfg.name, cfg.port)
            except AdvertiseError as e:
                try:
                    settings.update_discovery(previous)
                except OSError as restore_error:
                    logger.error("failed to restore discovery settings: %s", restore_error)
                raise InternalError(str(e)) from e

        return {"status": "ok", "discovery": cfg}

    @router.put("/settings/tls", dependencies=[auth])
    def update_tls(cfg: TLSConfig):
        """
        Persist TLS listener settings. Takes effect on the next restart.
        An enabled config must carry a cert/key pair that loads.
        """
        try:
            parse_address(cfg.port)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        if cfg.enabled:
            if not cfg.cert or not cfg.key:
                raise ValidationError("cert and key required when tls is enabled")
            try:
                build_ssl_context(cfg.cert, cfg.key)
            except (ssl.SSLError, OSError) as e:
                raise ValidationError(f"invalid certificate or key: {e}") from e

        try:
            settings.update_tls(cfg)
        except OSError as e:
            raise InternalError(f"failed to save settings: {e}") from e

        return {"status": "ok", "restart_required": True}

    return router
