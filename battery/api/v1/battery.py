"""Battery balance and usage API endpoints."""

import secrets
from datetime import date, timedelta

import structlog
from fastapi import APIRouter, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field

from battery.auth import CurrentUser
from battery.config import get_settings
from battery.models.billing import (
    BalanceCheck,
    BalanceTransaction,
    DailyUsageSummary,
    ResetResult,
    UsageRecord,
    UsageResult,
)
from battery.services.cost_calculator import estimate_remaining_messages
from battery.services.daily_reset import DailyAllowanceService
from battery.services.ledger import BatteryLedger, InsufficientBalanceError

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["battery"])

HISTORY_DEFAULT_DAYS = 30
STATUS_HISTORY_DAYS = 7


class BatteryStatusResponse(BaseModel):
    """Balance overview for the battery widget."""

    total_balance: int
    daily_allowance: int
    last_daily_reset: date
    today_usage: int
    usage_history: list[DailyUsageSummary]
    remaining_messages: dict[str, int]


class TrackUsageRequest(BaseModel):
    """One completed AI call reported by the chat pipeline."""

    conversation_id: str
    message_id: str
    model: str = Field(min_length=1)
    input_tokens: int = Field(ge=0)
    output_tokens: int = Field(ge=0)
    cached: bool = False


class ModelUsage(BaseModel):
    model: str
    messages: int


class UsageHistoryResponse(BaseModel):
    """Daily usage summaries for a date range."""

    start: date
    end: date
    total_credits_used: int
    total_messages: int
    top_models: list[ModelUsage]
    days: list[DailyUsageSummary]


def _get_ledger(request: Request) -> BatteryLedger:
    ledger = getattr(request.app.state, "ledger", None)
    if ledger is None:
        raise HTTPException(status_code=503, detail="Battery ledger unavailable")
    return ledger


def _get_daily_reset_service(request: Request) -> DailyAllowanceService:
    service = getattr(request.app.state, "daily_reset_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Daily reset unavailable")
    return service


@router.get("/battery", response_model=BatteryStatusResponse)
async def battery_status(request: Request, user: CurrentUser) -> BatteryStatusResponse:
    """Balance, allowance and the last week of usage for the current user."""
    ledger = _get_ledger(request)
    balance = await ledger.ensure_balance(user.id)
    history = await ledger.get_recent_usage(user.id, days=STATUS_HISTORY_DAYS)

    today = ledger.now_provider().date()
    today_usage = next(
        (summary.total_credits_used for summary in history if summary.date == today), 0
    )

    return BatteryStatusResponse(
        total_balance=balance.total_balance,
        daily_allowance=balance.daily_allowance,
        last_daily_reset=balance.last_daily_reset,
        today_usage=today_usage,
        usage_history=history,
        remaining_messages=estimate_remaining_messages(balance.total_balance),
    )


@router.get("/battery/check", response_model=BalanceCheck)
async def check_balance(
    request: Request,
    user: CurrentUser,
    model: str = Query(min_length=1),
    estimated_tokens: int | None = Query(default=None, ge=0),
) -> BalanceCheck:
    """Whether the user can afford one call to ``model``."""
    ledger = _get_ledger(request)
    return await ledger.check_balance(user.id, model, estimated_tokens)


@router.get("/battery/transactions", response_model=list[BalanceTransaction])
async def list_transactions(
    request: Request,
    user: CurrentUser,
    limit: int = Query(default=20, ge=1, le=100),
) -> list[BalanceTransaction]:
    """Most recent ledger entries, newest first."""
    ledger = _get_ledger(request)
    entries = await ledger.list_transactions(user.id, limit=limit)
    return list(reversed(entries))


@router.post("/battery/daily-reset", response_model=ResetResult)
async def run_daily_reset(
    request: Request,
    cron_secret: str | None = Header(default=None, alias="X-Cron-Secret"),
) -> ResetResult:
    """Scheduler hook: credit today's allowances."""
    expected = get_settings().billing.cron_secret
    if not expected:
        raise HTTPException(status_code=503, detail="Daily reset trigger not configured")
    if not cron_secret or not secrets.compare_digest(cron_secret, expected):
        logger.warning("daily_reset_unauthorized")
        raise HTTPException(status_code=401, detail="Invalid cron secret")

    service = _get_daily_reset_service(request)
    return await service.reset_daily_allowances()


@router.post("/usage/track", response_model=UsageResult)
async def track_usage(
    body: TrackUsageRequest,
    request: Request,
    user: CurrentUser,
) -> UsageResult:
    """Charge the battery for a completed AI call."""
    ledger = _get_ledger(request)
    record = UsageRecord(user_id=user.id, **body.model_dump())

    try:
        return await ledger.track_usage(record)
    except InsufficientBalanceError as e:
        raise HTTPException(
            status_code=402,
            detail={
                "error": "insufficient_battery",
                "message": "Not enough battery for this request. "
                "Upgrade your plan or buy a battery pack to continue.",
                "required": e.required,
                "available": e.available,
                "upgrade_url": "/api/v1/billing/plans",
            },
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/usage/history", response_model=UsageHistoryResponse)
async def usage_history(
    request: Request,
    user: CurrentUser,
    start: date | None = None,
    end: date | None = None,
) -> UsageHistoryResponse:
    """Daily usage between ``start`` and ``end`` (default: the last 30 days)."""
    ledger = _get_ledger(request)
    end = end or ledger.now_provider().date()
    start = start or end - timedelta(days=HISTORY_DEFAULT_DAYS - 1)

    try:
        days = await ledger.get_usage_history(user.id, start, end)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    combined = DailyUsageSummary(user_id=user.id, date=end)
    for summary in days:
        combined.total_credits_used += summary.total_credits_used
        combined.total_messages += summary.total_messages
        for model, count in summary.models_used.items():
            combined.models_used[model] = combined.models_used.get(model, 0) + count

    return UsageHistoryResponse(
        start=start,
        end=end,
        total_credits_used=combined.total_credits_used,
        total_messages=combined.total_messages,
        top_models=[
            ModelUsage(model=model, messages=count) for model, count in combined.top_models()
        ],
        days=days,
    )
