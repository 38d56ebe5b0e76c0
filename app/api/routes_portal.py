import logging
from dataclasses import dataclass

import jwt
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.routes_subscriptions import schedule_response
from app.domain.subscriptions import schemas as subscription_schemas
from app.domain.subscriptions import service as subscription_service
from app.domain.subscriptions.events_service import Actor
from app.domain.subscriptions.statuses import ActorType
from app.infra.auth import decode_portal_token
from app.infra.db import get_db_session
from app.settings import settings

router = APIRouter(prefix="/portal")
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PortalIdentity:
    customer_id: str

    @property
    def actor(self) -> Actor:
        return Actor(ActorType.CUSTOMER, self.customer_id)


def _unauthorized(detail: str = "Not authenticated") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_customer(request: Request) -> PortalIdentity:
    header = request.headers.get("Authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise _unauthorized()
    try:
        claims = decode_portal_token(token, settings.client_portal_secret)
    except jwt.PyJWTError as exc:
        logger.info("portal_token_rejected", extra={"extra": {"reason": type(exc).__name__}})
        raise _unauthorized("Invalid token") from exc
    customer_id = claims.get("sub")
    if not customer_id:
        raise _unauthorized("Invalid token")
    return PortalIdentity(customer_id=str(customer_id))


@router.get("/subscriptions", response_model=list[subscription_schemas.PortalSubscription])
async def list_my_subscriptions(
    identity: PortalIdentity = Depends(require_customer),
    session: AsyncSession = Depends(get_db_session),
) -> list[subscription_schemas.PortalSubscription]:
    results = await subscription_service.list_customer_subscriptions(session, identity.customer_id)
    return [subscription_schemas.PortalSubscription(**item) for item in results]


@router.post("/schedules/{schedule_id}/skip", response_model=subscription_schemas.ScheduleResponse)
async def skip_my_visit(
    schedule_id: str,
    payload: subscription_schemas.SkipRequest,
    identity: PortalIdentity = Depends(require_customer),
    session: AsyncSession = Depends(get_db_session),
) -> subscription_schemas.ScheduleResponse:
    entry = await subscription_service.skip_schedule(
        session,
        schedule_id,
        reason=payload.reason,
        actor=identity.actor,
        expected_version=payload.expected_version,
    )
    response = schedule_response(entry)
    await session.commit()
    return response
