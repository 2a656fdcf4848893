from contextlib import asynccontextmanager
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, get_settings
from .database import Database
from .exceptions import (
    CooldownError,
    DuplicateRedemptionError,
    InvalidStateTransitionError,
    NotFoundError,
    ReferralError,
)
from .logging_config import setup_logging
from .models import ReferralStatus
from .schemas import (
    BackfillResult,
    CreditRedemptionRequest,
    EarningsPaidEvent,
    EarningsPaidResult,
    FailRedemptionRequest,
    PendingRedemptionsPage,
    RedemptionOut,
    RedemptionRequest,
    RedemptionResult,
    RedemptionSummary,
    ReferralCodeValidation,
    ReferralHistoryPage,
    ReferralOverview,
    ReferralSummaryOut,
    ReferrerInfo,
)
from .service import ReferralService

router = APIRouter()


def _http_error(e: ReferralError) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, CooldownError):
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=str(e),
            headers={"Retry-After": str(e.retry_after)},
        )
    if isinstance(e, (DuplicateRedemptionError, InvalidStateTransitionError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level, settings.log_json)
        database = Database(settings.database_url, settings.database_echo)
        await database.create_all()
        service = ReferralService(database, settings)
        app.state.service = service
        if settings.summary_worker_enabled:
            await service.materializer.start()
        try:
            yield
        finally:
            await service.materializer.stop()
            await database.dispose()

    app = FastAPI(
        title="Referral Ledger API",
        description="Referral commission balances, redemptions and cached partner summaries",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    return app


def get_service(request: Request) -> ReferralService:
    return request.app.state.service


@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "referral-ledger"}


@router.get("/referrals/validate/{code}", response_model=ReferralCodeValidation, tags=["Referrals"])
async def validate_referral_code(
    code: str, service: ReferralService = Depends(get_service)
) -> ReferralCodeValidation:
    try:
        referrer = await service.validate_referral_code(code)
    except ReferralError as e:
        raise _http_error(e)
    return ReferralCodeValidation(referrer=ReferrerInfo.model_validate(referrer))


@router.get("/referrals/overview", response_model=ReferralOverview, tags=["Referrals"])
async def get_overview(
    x_partner_id: UUID = Header(...),
    service: ReferralService = Depends(get_service),
) -> ReferralOverview:
    try:
        return await service.get_overview(x_partner_id)
    except ReferralError as e:
        raise _http_error(e)


@router.get("/referrals/summary", response_model=ReferralSummaryOut, tags=["Referrals"])
async def get_summary(
    x_partner_id: UUID = Header(...),
    service: ReferralService = Depends(get_service),
) -> ReferralSummaryOut:
    try:
        summary = await service.get_summary(x_partner_id)
    except ReferralError as e:
        raise _http_error(e)
    return ReferralSummaryOut.model_validate(summary)


@router.get("/referrals/history", response_model=ReferralHistoryPage, tags=["Referrals"])
async def get_history(
    x_partner_id: UUID = Header(...),
    limit: int = Query(10, ge=1, le=100),
    status_filter: Optional[ReferralStatus] = Query(None, alias="status"),
    cursor: Optional[str] = None,
    service: ReferralService = Depends(get_service),
) -> ReferralHistoryPage:
    try:
        return await service.get_history(x_partner_id, limit, status_filter, cursor)
    except ReferralError as e:
        raise _http_error(e)


@router.get("/referrals/redemptions/summary", response_model=RedemptionSummary, tags=["Redemptions"])
async def get_redemption_summary(
    x_partner_id: UUID = Header(...),
    service: ReferralService = Depends(get_service),
) -> RedemptionSummary:
    return await service.redemption_summary(x_partner_id)


@router.post(
    "/referrals/redemptions",
    response_model=RedemptionResult,
    status_code=status.HTTP_201_CREATED,
    tags=["Redemptions"],
)
async def request_redemption(
    request: RedemptionRequest,
    x_partner_id: UUID = Header(...),
    service: ReferralService = Depends(get_service),
) -> RedemptionResult:
    try:
        return await service.request_redemption(
            x_partner_id,
            request.referral_id,
            request.referred_partner_id,
            request.amount,
            request.earning_id,
        )
    except ReferralError as e:
        raise _http_error(e)


@router.get("/admin/redemptions/pending", response_model=PendingRedemptionsPage, tags=["Admin"])
async def list_pending_redemptions(
    limit: int = Query(20, ge=1, le=100),
    cursor: Optional[str] = None,
    service: ReferralService = Depends(get_service),
) -> PendingRedemptionsPage:
    try:
        return await service.list_pending_redemptions(limit, cursor)
    except ReferralError as e:
        raise _http_error(e)


@router.post("/admin/redemptions/{redemption_id}/credit", response_model=RedemptionOut, tags=["Admin"])
async def credit_redemption(
    redemption_id: UUID,
    request: CreditRedemptionRequest,
    service: ReferralService = Depends(get_service),
) -> RedemptionOut:
    try:
        return await service.credit_redemption(
            redemption_id, request.transaction_ref, request.credited_at
        )
    except ReferralError as e:
        raise _http_error(e)


@router.post("/admin/redemptions/{redemption_id}/fail", response_model=RedemptionOut, tags=["Admin"])
async def fail_redemption(
    redemption_id: UUID,
    request: FailRedemptionRequest,
    service: ReferralService = Depends(get_service),
) -> RedemptionOut:
    try:
        return await service.fail_redemption(redemption_id, request.reason)
    except ReferralError as e:
        raise _http_error(e)


@router.post(
    "/admin/maintenance/backfill-redemption-flags",
    response_model=BackfillResult,
    tags=["Admin"],
)
async def backfill_redemption_flags(
    service: ReferralService = Depends(get_service),
) -> BackfillResult:
    return await service.backfill_redemption_flags()


@router.post("/hooks/earnings/paid", response_model=EarningsPaidResult, tags=["Hooks"])
async def earnings_paid(
    event: EarningsPaidEvent,
    service: ReferralService = Depends(get_service),
) -> EarningsPaidResult:
    return await service.on_earnings_paid(event.earning_ids)


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
