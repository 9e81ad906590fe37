from __future__ import annotations

import logging
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from xbrch.core.config import get_settings
from xbrch.domain.models import ApiKey, Tenant
from xbrch.persistence.db import Database
from xbrch.services.auth.api_keys import hash_api_key, normalize_role, role_allows
from xbrch.services.broadcasts import Actor, BroadcastService, get_broadcast_service
from xbrch.services.website import WebsiteService


logger = logging.getLogger(__name__)


def get_database(request: Request) -> Database:
    return request.app.state.database


async def get_db(database: Database = Depends(get_database)) -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with database.session() as session:
        yield session


def get_broadcasts(request: Request) -> BroadcastService:
    # Prefer an app-scoped service (tests inject one) over the process-wide default.
    service = getattr(request.app.state, "broadcast_service", None)
    return service or get_broadcast_service()


def get_website(service: BroadcastService = Depends(get_broadcasts)) -> WebsiteService:
    # Share the broadcast service's oracle so one provider client serves both.
    return WebsiteService(oracle=service.oracle)


class Principal(BaseModel):
    # Authenticated identity used for tenant scoping and RBAC.
    tenant_id: str
    role: str
    api_key_id: str

    def as_actor(self) -> Actor:
        return Actor(tenant_id=self.tenant_id, actor_id=self.api_key_id, role=self.role)


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def _parse_bearer_token(header_value: str | None) -> str:
    if not header_value:
        raise _auth_error("Missing API key")
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    settings = get_settings()
    bearer_token = _parse_bearer_token(request.headers.get(settings.auth_api_key_header))

    try:
        result = await db.execute(
            select(ApiKey, Tenant)
            .join(Tenant, ApiKey.tenant_id == Tenant.id)
            .where(ApiKey.key_hash == hash_api_key(bearer_token))
        )
    except SQLAlchemyError as exc:
        logger.error("auth_lookup_failed path=%s", request.url.path, exc_info=exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "AUTH_UNAVAILABLE", "message": "Authentication unavailable"},
        ) from exc

    row = result.first()
    if row is None:
        logger.info("auth_rejected reason=unknown_key path=%s", request.url.path)
        raise _auth_error("Invalid API key")
    api_key, tenant = row
    if api_key.revoked_at is not None or not tenant.is_active:
        logger.info("auth_rejected reason=inactive tenant_id=%s key_id=%s", tenant.id, api_key.id)
        raise _auth_error("API key is revoked or inactive")

    try:
        role = normalize_role(tenant.role)
    except ValueError as exc:
        raise _forbidden_error(str(exc)) from exc

    return Principal(tenant_id=tenant.id, role=role, api_key_id=api_key.id)


def require_role(minimum_role: str):
    # Dependency factory to enforce RBAC at the route level.
    async def _dependency(
        request: Request,
        principal: Principal = Depends(get_current_principal),
    ) -> Principal:
        if not role_allows(role=principal.role, minimum_role=minimum_role):
            logger.info(
                "rbac_forbidden tenant_id=%s path=%s required_role=%s",
                principal.tenant_id,
                request.url.path,
                minimum_role,
            )
            raise _forbidden_error("Insufficient role for this operation")
        return principal

    return _dependency
