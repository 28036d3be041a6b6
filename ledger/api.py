import logging
from contextlib import asynccontextmanager
from typing import Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from access.admin import AdminAuthService
from access.rate_limit import LoginRateLimiter
from referral.models import (
    BindReferralRequest,
    ReferralBindResult,
    ReferralRewardStatus,
    ReferralRewardView,
    WithdrawalResult,
    WithdrawalView,
    WithdrawRequest,
)

from .config import settings
from .dashboard import DashboardService, DashboardToday
from .database import Storage
from .errors import LedgerServiceError, RateLimitedError, UnauthorizedError
from .models import (
    AdminIdentity,
    BackfillRequest,
    CreateUserRequest,
    LoginRequest,
    ProfileChangeLogView,
    RechargeRecordView,
    RechargeRequest,
    RechargeResult,
    RefundRequest,
    RefundResult,
    StatusView,
    UpdateUserRequest,
    UserTokenResponse,
    UserView,
    to_cents,
)
from .scheduler import LedgerScheduler
from .service import LedgerService

logger = logging.getLogger(__name__)


def client_address(request: Request) -> str:
    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip and cf_ip.strip():
        return cf_ip.strip()
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return "unknown"


def require_admin(
    x_admin_id: Optional[str] = Header(None),
    x_admin_username: Optional[str] = Header(None),
) -> AdminIdentity:
    if not x_admin_id or not x_admin_username:
        raise UnauthorizedError("admin session required")
    return AdminIdentity(admin_id=x_admin_id, username=x_admin_username)


def create_app(
    ledger_service: Optional[LedgerService] = None,
    auth_service: Optional[AdminAuthService] = None,
    dashboard_service: Optional[DashboardService] = None,
    start_scheduler: Optional[bool] = None,
    root_path: str = "",
) -> FastAPI:
    ledger_service = ledger_service or LedgerService()
    storage: Storage = ledger_service.storage
    referrals = ledger_service.referrals
    auth_service = auth_service or AdminAuthService(
        storage,
        LoginRateLimiter(
            max_failures=settings.LOGIN_MAX_FAILURES,
            window_seconds=settings.LOGIN_WINDOW_SECONDS,
            block_seconds=settings.LOGIN_BLOCK_SECONDS,
        ),
        clock=ledger_service.clock,
    )
    dashboard_service = dashboard_service or DashboardService(
        storage, referrals, settings.DASHBOARD_UTC_OFFSET_MINUTES, clock=ledger_service.clock
    )
    if start_scheduler is None:
        start_scheduler = settings.REWARD_UNLOCK_ENABLED
    scheduler = LedgerScheduler(referrals, settings.REWARD_UNLOCK_INTERVAL_SECONDS)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_scheduler:
            scheduler.start()
        yield
        scheduler.shutdown()

    app = FastAPI(
        title="Membership Ledger API",
        description="Membership expiry ledger with backfills, refunds and referral rewards",
        version="1.0.0",
        root_path=root_path,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = request.headers.get("cf-ray") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.info("%s %s -> %d [%s]", request.method, request.url.path, response.status_code, request_id)
        return response

    @app.exception_handler(LedgerServiceError)
    async def ledger_error_handler(request: Request, exc: LedgerServiceError):
        headers = {}
        if isinstance(exc, RateLimitedError):
            headers["Retry-After"] = str(exc.retry_after)
        if exc.status_code >= 500:
            logger.error("Ledger error on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": str(exc), "code": exc.code},
            headers=headers,
        )

    @app.get("/health", tags=["System"])
    def health_check():
        return {
            "status": "healthy",
            "service": "membership-ledger",
            "schema_version": storage.schema_version(),
        }

    # -------- Admin session --------

    @app.post("/admin/login", response_model=AdminIdentity, tags=["Admin"])
    def admin_login(request: LoginRequest, http_request: Request) -> AdminIdentity:
        return auth_service.login(request.username, request.password, client_address(http_request))

    # -------- Users --------

    @app.get("/admin/users", response_model=list[UserView], tags=["Users"])
    def search_users(
        q: str = "",
        limit: int = Query(50, ge=1, le=200),
        admin: AdminIdentity = Depends(require_admin),
    ) -> list[UserView]:
        return ledger_service.search_users(q, limit)

    @app.post("/admin/users", response_model=UserTokenResponse, status_code=status.HTTP_201_CREATED, tags=["Users"])
    def create_user(request: CreateUserRequest, admin: AdminIdentity = Depends(require_admin)) -> UserTokenResponse:
        user, token = ledger_service.create_user(
            request.username,
            admin=admin,
            system_email=request.system_email,
            user_email=request.user_email,
            family_group_name=request.family_group_name,
        )
        return UserTokenResponse(user=user, token=token)

    @app.get("/admin/users/{user_id}", response_model=UserView, tags=["Users"])
    def get_user(user_id: str, admin: AdminIdentity = Depends(require_admin)) -> UserView:
        return ledger_service.get_user(user_id)

    @app.patch("/admin/users/{user_id}", response_model=UserView, tags=["Users"])
    def update_user(
        user_id: str, request: UpdateUserRequest, admin: AdminIdentity = Depends(require_admin)
    ) -> UserView:
        return ledger_service.update_user(
            user_id,
            admin=admin,
            username=request.username,
            profile=request.profile,
            change_notes=request.change_notes,
        )

    @app.post("/admin/users/{user_id}/reset-token", response_model=UserTokenResponse, tags=["Users"])
    def reset_token(user_id: str, admin: AdminIdentity = Depends(require_admin)) -> UserTokenResponse:
        user, token = ledger_service.reset_token(user_id, admin=admin)
        return UserTokenResponse(user=user, token=token)

    @app.get("/admin/users/{user_id}/status-token", tags=["Users"])
    def get_status_token(user_id: str, admin: AdminIdentity = Depends(require_admin)):
        return {"user_id": user_id, "token": ledger_service.get_status_token(user_id)}

    @app.get("/admin/profile-change-logs", response_model=list[ProfileChangeLogView], tags=["Users"])
    def list_profile_change_logs(
        user_id: Optional[str] = None,
        limit: int = Query(50, ge=1, le=200),
        admin: AdminIdentity = Depends(require_admin),
    ) -> list[ProfileChangeLogView]:
        return ledger_service.list_profile_change_logs(user_id, limit)

    # -------- Recharges --------

    @app.post("/admin/users/{user_id}/recharge", response_model=RechargeResult, tags=["Recharges"])
    def recharge(
        user_id: str, request: RechargeRequest, admin: AdminIdentity = Depends(require_admin)
    ) -> RechargeResult:
        return ledger_service.recharge(
            user_id,
            request.days,
            request.reason,
            to_cents(request.payment_amount),
            note=request.internal_note,
            admin=admin,
        )

    @app.post("/admin/users/{user_id}/backfill", response_model=RechargeResult, tags=["Recharges"])
    def backfill(
        user_id: str, request: BackfillRequest, admin: AdminIdentity = Depends(require_admin)
    ) -> RechargeResult:
        return ledger_service.backfill(
            user_id,
            request.days,
            request.reason,
            to_cents(request.payment_amount),
            request.occurred_at,
            note=request.internal_note,
            admin=admin,
        )

    @app.post("/admin/recharge-records/{record_id}/refund", response_model=RefundResult, tags=["Recharges"])
    def refund(
        record_id: str, request: RefundRequest, admin: AdminIdentity = Depends(require_admin)
    ) -> RefundResult:
        amount = to_cents(request.amount) if request.amount is not None else None
        return ledger_service.refund(record_id, admin=admin, amount_cents=amount, note=request.note)

    @app.get("/admin/recharge-records", response_model=list[RechargeRecordView], tags=["Recharges"])
    def list_recharge_records(
        user_id: Optional[str] = None,
        limit: int = Query(50, ge=1, le=200),
        admin: AdminIdentity = Depends(require_admin),
    ) -> list[RechargeRecordView]:
        return ledger_service.list_recharge_records(user_id, limit)

    @app.get("/admin/dashboard/today", response_model=DashboardToday, tags=["Dashboard"])
    def dashboard_today(admin: AdminIdentity = Depends(require_admin)) -> DashboardToday:
        return dashboard_service.today()

    # -------- Referrals --------

    @app.post("/admin/referrals/bind", response_model=ReferralBindResult, tags=["Referrals"])
    def bind_referral(
        request: BindReferralRequest, admin: AdminIdentity = Depends(require_admin)
    ) -> ReferralBindResult:
        check_abuse = settings.REFERRAL_CHECK_ABUSE if request.check_abuse is None else request.check_abuse
        return referrals.bind_referral(
            request.inviter_user_id,
            request.invitee_user_id,
            bound_by=admin.admin_id,
            check_abuse=check_abuse,
        )

    @app.get("/admin/referrals/rewards", response_model=list[ReferralRewardView], tags=["Referrals"])
    def list_rewards(
        inviter_user_id: Optional[str] = None,
        reward_status: Optional[ReferralRewardStatus] = Query(None, alias="status"),
        limit: int = Query(100, ge=1, le=500),
        admin: AdminIdentity = Depends(require_admin),
    ) -> list[ReferralRewardView]:
        return referrals.list_rewards(inviter_user_id, reward_status, limit)

    @app.post("/admin/referrals/withdraw", response_model=WithdrawalResult, tags=["Referrals"])
    def withdraw(request: WithdrawRequest, admin: AdminIdentity = Depends(require_admin)) -> WithdrawalResult:
        return referrals.withdraw(request.inviter_user_id, processed_by=admin.admin_id, note=request.note)

    @app.get("/admin/referrals/withdrawals", response_model=list[WithdrawalView], tags=["Referrals"])
    def list_withdrawals(
        inviter_user_id: Optional[str] = None,
        limit: int = Query(100, ge=1, le=500),
        admin: AdminIdentity = Depends(require_admin),
    ) -> list[WithdrawalView]:
        return referrals.list_withdrawals(inviter_user_id, limit)

    # -------- Public --------

    @app.get("/status/{token}", response_model=StatusView, tags=["Public"])
    def membership_status(token: str) -> StatusView:
        return ledger_service.status(token)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=settings.LOG_LEVEL)
    uvicorn.run(app, host="0.0.0.0", port=8000)
