"""
Feature-use endpoints.

Endpoints:
- POST /api/v1/usage - Take credits for one narrated guide (idempotent per attraction)
- DELETE /api/v1/usage/{attraction_id} - Give the credits back when generation failed
"""

import structlog
from fastapi import APIRouter, Header, HTTPException, Request
from pydantic import BaseModel, Field

from guidepass.api.v1.deps import get_billing_service
from guidepass.auth import CurrentUser
from guidepass.constants import CREDITS_PER_GUIDE, IDEMPOTENCY_KEY_HEADER
from guidepass.errors import InsufficientCredits, InvalidAmount, LedgerConflict

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/usage", tags=["usage"])


class UsageRequest(BaseModel):
    """Request body for recording a guide generation."""

    attraction_id: str = Field(min_length=1, description="Point of interest the guide is for")
    amount: int | str = Field(default=CREDITS_PER_GUIDE, description="Credits to consume")


class UsageResponse(BaseModel):
    """Result of a usage transaction."""

    ok: bool
    duplicate: bool
    unlimited: bool
    remaining: int
    from_trial: int
    from_purchased: int


class ReleaseResponse(BaseModel):
    """Result of releasing a usage."""

    released: bool
    remaining: int | None = None


def _payment_required_error(error: InsufficientCredits) -> HTTPException:
    return HTTPException(
        status_code=402,
        detail={
            "code": "payment_required",
            "requested": error.requested,
            "available": error.available,
        },
    )


def _conflict_error() -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={"code": "try_again", "message": "Credits are being updated, please try again"},
    )


@router.post("", response_model=UsageResponse)
async def record_usage(
    body: UsageRequest,
    request: Request,
    user: CurrentUser,
    idempotency_key: str | None = Header(default=None, alias=IDEMPOTENCY_KEY_HEADER),
) -> UsageResponse:
    """
    Consume credits for one guide.

    Repeating the call for the same attraction (or Idempotency-Key) returns
    the original result without charging again.
    """
    service = get_billing_service(request)
    key = idempotency_key or body.attraction_id
    structlog.contextvars.bind_contextvars(attraction_id=body.attraction_id)

    try:
        outcome = await service.try_consume(user.id, body.amount, idempotency_key=key)
    except InvalidAmount as e:
        raise HTTPException(status_code=422, detail=str(e))
    except InsufficientCredits as e:
        logger.info("usage_payment_required", requested=e.requested, available=e.available)
        raise _payment_required_error(e)
    except LedgerConflict:
        raise _conflict_error()

    return UsageResponse(
        ok=outcome.ok,
        duplicate=outcome.duplicate,
        unlimited=outcome.unlimited,
        remaining=outcome.remaining,
        from_trial=outcome.from_trial,
        from_purchased=outcome.from_purchased,
    )


@router.delete("/{attraction_id}", response_model=ReleaseResponse)
async def release_usage(
    attraction_id: str,
    request: Request,
    user: CurrentUser,
    idempotency_key: str | None = Header(default=None, alias=IDEMPOTENCY_KEY_HEADER),
) -> ReleaseResponse:
    """Refund the credits taken for a guide that failed to generate."""
    service = get_billing_service(request)
    try:
        ledger = await service.release_usage(user.id, idempotency_key or attraction_id)
    except LedgerConflict:
        raise _conflict_error()

    if ledger is None:
        return ReleaseResponse(released=False)
    return ReleaseResponse(released=True, remaining=ledger.available)
