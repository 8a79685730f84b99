"""
HTTP surface for the audit trail.

Exposes the recycle bin, entity history and recovery endpoints. Every
endpoint requires a bearer token; the injected ActorResolver turns it into
the acting principal's id.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Literal, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import AliasChoices, BaseModel, Field

from . import __version__
from .access_control import ActorResolver, JWTActorResolver, UserDirectory
from .audit_trail.models import RecoveryError
from .audit_trail.store import AuditTrailStore
from .config import AuditTrailConfig
from .exceptions import AuthenticationError

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

RECOVERY_STATUS = {
    None: status.HTTP_200_OK,
    RecoveryError.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    RecoveryError.NOT_RECOVERABLE: status.HTTP_400_BAD_REQUEST,
    RecoveryError.INVALID_ACTION: status.HTTP_400_BAD_REQUEST,
    RecoveryError.PERSISTENCE_FAILURE: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class RecoverRequest(BaseModel):
    """Body of POST /audit-trail/recover."""

    log_id: int = Field(..., validation_alias=AliasChoices("logId", "auditLogId"))


def get_store(request: Request) -> AuditTrailStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Audit trail store is not ready",
        )
    return store


def current_actor(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    """Resolve the caller's actor id or fail with 401."""
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No token provided",
            headers={"WWW-Authenticate": "Bearer"},
        )

    resolver: ActorResolver = request.app.state.resolver
    try:
        return resolver.resolve(credentials.credentials)
    except AuthenticationError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )


def create_app(
    resolver: ActorResolver,
    store: Optional[AuditTrailStore] = None,
    lifespan: Any = None,
    title: str = "Audit Trail",
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        resolver: Turns bearer tokens into actor ids
        store: Ready store; may be omitted when ``lifespan`` installs one on
            ``app.state.store``
        lifespan: Optional FastAPI lifespan context
        title: OpenAPI title

    Returns:
        FastAPI application
    """
    app = FastAPI(title=title, version=__version__, lifespan=lifespan)
    app.state.resolver = resolver
    if store is not None:
        app.state.store = store

    @app.get("/audit-trail")
    async def get_audit_trail(
        view: Literal["all", "deleted", "history"] = Query("all", alias="type"),
        entity: Optional[str] = Query(None, min_length=1),
        entity_id: Optional[int] = Query(None, alias="entityId"),
        page: int = Query(1, ge=1),
        limit: Optional[int] = Query(None, ge=1),
        _actor_id: str = Depends(current_actor),
        store: AuditTrailStore = Depends(get_store),
    ) -> Dict[str, Any]:
        """List the recycle bin, one entity's history, or the whole log."""
        if view == "deleted":
            deleted = await store.list_deleted(page, limit, entity)
            return deleted.model_dump(mode="json", by_alias=True)

        if view == "history":
            if not entity or entity_id is None:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="entity and entityId are required for history",
                )
            items = await store.history(entity, entity_id, limit)
            return {
                "items": [
                    item.model_dump(mode="json", by_alias=True) for item in items
                ],
                "total": len(items),
            }

        entries = await store.list_entries(page, limit, entity)
        return entries.model_dump(mode="json", by_alias=True)

    @app.post("/audit-trail/recover")
    async def recover_item(
        body: RecoverRequest,
        actor_id: str = Depends(current_actor),
        store: AuditTrailStore = Depends(get_store),
    ) -> JSONResponse:
        """Recover a soft-deleted item."""
        result = await store.recover(body.log_id, actor_id)
        return JSONResponse(
            status_code=RECOVERY_STATUS[result.error],
            content=result.model_dump(mode="json", by_alias=True),
        )

    return app


def create_app_from_config(
    config: AuditTrailConfig,
    user_directory: Optional[UserDirectory] = None,
) -> FastAPI:
    """Build the application with SQL storage and JWT actor resolution."""
    resolver = JWTActorResolver.from_config(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        store = await AuditTrailStore.from_config(config, user_directory)
        app.state.store = store
        logger.info(f"{config.application_name} audit trail ready")
        try:
            yield
        finally:
            await store.storage.dispose()

    return create_app(resolver, lifespan=lifespan, title=config.application_name)
