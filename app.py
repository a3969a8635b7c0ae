from decimal import Decimal
from typing import Literal, Optional

from fastapi import Cookie, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from commission_engine import fmt
from errors import (
    InvalidInvitePasswordError,
    InvalidReferralCodeError,
    InvalidWalletError,
    InviteClaimedError,
    InviteExpiredError,
    InviteNotFoundError,
    ReferralError,
    TransferError,
)
from logging_config import get_logger, setup_logging
from referral_engine import is_valid_wallet
from services import Services, build_services
from settings import settings as default_settings

logger = get_logger(__name__)

REF_CODE_COOKIE = "ref_code"
REF_IP_COOKIE = "ref_ip"


# ---------
# pydantic models (requests)
# ---------

class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class BonusRequest(CamelModel):
    wallet: Optional[str] = Field(None, description="Wallet of the new user")
    referral_code: Optional[str] = Field(None, alias="referralCode", description="Referral code used on signup")


class TrackClickRequest(CamelModel):
    code: Optional[str] = Field(None, description="Referral code from the ?ref= link")
    source: Optional[str] = None
    medium: Optional[str] = None
    campaign: Optional[str] = None
    referer: Optional[str] = None
    landing_page: Optional[str] = Field(None, alias="landingPage")


class RegisterConversionRequest(CamelModel):
    wallet: Optional[str] = Field(None, description="Wallet that just connected")
    code: Optional[str] = Field(None, description="Referral code; falls back to the ref_code cookie")
    source: Optional[str] = None
    campaign: Optional[str] = None


class ReferralCodeRequest(CamelModel):
    wallet: str = Field(..., description="Wallet to fetch or generate a referral code for")


class CreateInviteRequest(CamelModel):
    referrer_wallet: Optional[str] = Field(None, alias="referrerWallet")
    referrer_code: Optional[str] = Field(None, alias="referrerCode", description="Defaults to the referrer's own code")
    password: Optional[str] = None
    custom_message: Optional[str] = Field(None, alias="customMessage")
    permanent: bool = Field(False, description="Permanent invites never expire and accept any number of signups")


class InviteSignupRequest(CamelModel):
    code: Optional[str] = Field(None, description="Invite code, e.g. SI-...")
    wallet: Optional[str] = None
    password: Optional[str] = None


# ---------
# helpers
# ---------

def get_services(request: Request) -> Services:
    return request.app.state.services


def _require_wallet(wallet: Optional[str]) -> str:
    if not wallet:
        raise HTTPException(status_code=400, detail="Wallet address is required")
    if not is_valid_wallet(wallet):
        raise HTTPException(status_code=400, detail="Invalid wallet address format")
    return wallet.lower()


def _client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


# status code per failed-distribution outcome
FAILURE_STATUS = {
    "not_eligible": 400,
    "treasury_exhausted": 503,
}

# status code per invite error; the body flags expired and claimed invites
INVITE_ERROR_STATUS = {
    InviteNotFoundError: 404,
    InviteExpiredError: 410,
    InviteClaimedError: 409,
    InvalidInvitePasswordError: 403,
    InvalidReferralCodeError: 400,
    InvalidWalletError: 400,
}


def _invite_error(error: ReferralError) -> JSONResponse:
    content = {"success": False, "error": str(error), "retriable": error.retriable}
    if isinstance(error, InviteExpiredError):
        content["expired"] = True
    if isinstance(error, InviteClaimedError):
        content["claimed"] = True
    return JSONResponse(status_code=INVITE_ERROR_STATUS.get(type(error), 400), content=content)


def create_app(services: Optional[Services] = None) -> FastAPI:
    if services is None:
        setup_logging(default_settings)
        services = build_services(default_settings)

    app = FastAPI(title="Referral Signup Bonus Service", version="0.1.0")
    app.state.services = services

    # CORS middleware to allow the dashboard frontend to call the API
    app.add_middleware(
        CORSMiddleware,
        allow_origins=services.settings.origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(HTTPException)
    async def http_error(request: Request, exc: HTTPException):
        # every error body says whether retrying can help
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "error": exc.detail,
                "retriable": exc.status_code >= 500,
            },
        )

    # ---------
    # endpoints
    # ---------

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.post("/api/referrals/bonus")
    def distribute_bonus(payload: BonusRequest, svc: Services = Depends(get_services)):
        """
        distribute the signup bonus to a new user and the commissions to its
        referral chain. safe to retry: paid legs are never paid twice.
        """
        wallet = _require_wallet(payload.wallet)
        if not payload.referral_code:
            raise HTTPException(status_code=400, detail="Referral code is required")

        logger.info("bonus_requested", wallet=wallet)
        try:
            result = svc.executor.distribute_signup_bonus(wallet, payload.referral_code)
        except InvalidWalletError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except Exception:
            logger.exception("bonus_distribution_crashed", wallet=wallet)
            raise HTTPException(status_code=500, detail="Failed to distribute bonus")

        data = result.to_dict()
        if result.success:
            data["message"] = (
                "Signup bonus already received"
                if result.already_received
                else f"Successfully distributed {fmt(result.total_distributed)} CGC"
            )
            return {"success": True, "data": data}

        return JSONResponse(
            status_code=FAILURE_STATUS.get(result.error_code, 500),
            content={
                "success": False,
                "error": result.errors[0] if result.errors else "Distribution failed",
                "errors": result.errors,
                "errorCode": result.error_code,
                "retriable": result.retriable,
                "partialResult": {
                    "newUserBonus": data["newUserBonus"],
                    "referrerCommissions": data["referrerCommissions"],
                    "totalDistributed": data["totalDistributed"],
                },
            },
        )

    @app.get("/api/referrals/bonus")
    def bonus_status(
        wallet: Optional[str] = Query(None, description="Wallet to query"),
        type: Literal["status", "treasury", "commissions"] = Query("status"),
        svc: Services = Depends(get_services),
    ):
        """
        read-only queries:
          - status:      has this wallet received its signup bonus
          - treasury:    remaining signup-bonus budget
          - commissions: what this wallet earned as a referrer
        """
        wallet = _require_wallet(wallet)

        if type == "treasury":
            try:
                treasury = svc.treasury.status(svc.executor.max_distribution)
            except TransferError as e:
                logger.warning("treasury_status_unavailable", error=str(e))
                raise HTTPException(status_code=503, detail="Treasury status unavailable")
            data = {k: fmt(v) if isinstance(v, Decimal) else v for k, v in treasury.items()}
            return {"success": True, "data": data}

        if type == "commissions":
            return {"success": True, "data": svc.executor.commission_summary(wallet)}

        status = svc.executor.signup_bonus_status(wallet)
        return {"success": True, "data": {**status, **svc.executor.bonus_config()}}

    @app.get("/api/referrals/track")
    def referral_code_info(
        code: Optional[str] = Query(None, description="Referral code, e.g. CG-ABC123"),
        svc: Services = Depends(get_services),
    ):
        if not code:
            raise HTTPException(status_code=400, detail="Referral code is required")

        referral_code = svc.tracker.get_code_info(code)
        if referral_code is None:
            raise HTTPException(status_code=404, detail="Invalid referral code")
        if not referral_code.is_active:
            raise HTTPException(status_code=410, detail="Referral code is no longer active")

        return {
            "success": True,
            "data": {"code": referral_code.code, "isValid": True, "isActive": referral_code.is_active},
        }

    @app.post("/api/referrals/track")
    def track_click(payload: TrackClickRequest, request: Request, svc: Services = Depends(get_services)):
        """
        record a click on a referral link and drop the ref_code / ref_ip
        cookies used to attribute the signup later.
        """
        if not payload.code:
            raise HTTPException(status_code=400, detail="Referral code is required")

        try:
            receipt = svc.tracker.track_click(
                payload.code,
                {
                    "ip": _client_ip(request),
                    "user_agent": request.headers.get("user-agent", ""),
                    "source": payload.source,
                    "medium": payload.medium,
                    "campaign": payload.campaign,
                    "referer": payload.referer or request.headers.get("referer"),
                    "landing_page": payload.landing_page,
                },
            )
        except InvalidReferralCodeError as e:
            raise HTTPException(status_code=400, detail=str(e))

        response = JSONResponse(
            content={"success": True, "data": {"tracked": True, "clickId": receipt.click_id, "ipHash": receipt.ip_hash}}
        )
        cfg = svc.settings
        for name, value in ((REF_CODE_COOKIE, payload.code.strip().upper()), (REF_IP_COOKIE, receipt.ip_hash)):
            response.set_cookie(
                name,
                value,
                max_age=cfg.referral_cookie_max_age,
                httponly=True,
                secure=cfg.cookie_secure,
                samesite="lax",
            )
        return response

    @app.put("/api/referrals/track")
    def register_conversion(
        payload: RegisterConversionRequest,
        ref_code: Optional[str] = Cookie(None),
        ref_ip: Optional[str] = Cookie(None),
        svc: Services = Depends(get_services),
    ):
        """
        register the referral edge once a wallet connects.
        first referral wins; a second registration is a no-op.
        """
        wallet = _require_wallet(payload.wallet)

        code = payload.code or ref_code
        if not code:
            return {"success": True, "data": {"registered": False, "message": "No referral code found"}}

        edge = svc.tracker.register_referral(wallet, code, payload.source, payload.campaign)
        if edge is None:
            return {
                "success": True,
                "data": {"registered": False, "message": "User already registered or invalid referral code"},
            }

        converted = svc.tracker.mark_click_converted(ref_ip, wallet) if ref_ip else False

        response = JSONResponse(
            content={
                "success": True,
                "data": {
                    "registered": True,
                    "referrer": edge.referrer_address,
                    "level": edge.level,
                    "clickConverted": converted,
                },
            }
        )
        response.delete_cookie(REF_CODE_COOKIE)
        response.delete_cookie(REF_IP_COOKIE)
        return response

    @app.post("/api/referrals/code")
    def referral_code(payload: ReferralCodeRequest, svc: Services = Depends(get_services)):
        """
        return the wallet's referral code, generating one if it doesn't have it yet.
        """
        wallet = _require_wallet(payload.wallet)
        try:
            code = svc.tracker.get_or_create_code(wallet)
        except InvalidReferralCodeError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"success": True, "data": {"wallet": wallet, "referralCode": code.code, "isActive": code.is_active}}

    @app.post("/api/referrals/special-invite")
    def create_special_invite(payload: CreateInviteRequest, svc: Services = Depends(get_services)):
        referrer = _require_wallet(payload.referrer_wallet)
        try:
            invite = svc.invites.create_invite(
                referrer,
                referrer_code=payload.referrer_code,
                password=payload.password,
                custom_message=payload.custom_message,
                permanent=payload.permanent,
            )
        except (InvalidReferralCodeError, InvalidWalletError) as e:
            return _invite_error(e)
        return {
            "success": True,
            "inviteCode": invite.invite_code,
            "permanent": invite.permanent,
            "expiresAt": invite.expires_at.isoformat() if invite.expires_at else None,
        }

    @app.get("/api/referrals/special-invite")
    def special_invite_info(
        code: Optional[str] = Query(None, description="Invite code, e.g. SI-..."),
        svc: Services = Depends(get_services),
    ):
        if not code:
            raise HTTPException(status_code=400, detail="Invite code is required")
        try:
            invite = svc.invites.get_invite(code)
        except (InviteNotFoundError, InviteExpiredError, InviteClaimedError) as e:
            return _invite_error(e)
        return {
            "success": True,
            "invite": {
                "code": invite.invite_code,
                "referrerCode": invite.referrer_code,
                "customMessage": invite.custom_message,
                "hasPassword": invite.password_hash is not None,
                "permanent": invite.permanent,
                "createdAt": invite.created_at.isoformat(),
                "expiresAt": invite.expires_at.isoformat() if invite.expires_at else None,
            },
        }

    @app.put("/api/referrals/special-invite")
    def complete_special_invite(payload: InviteSignupRequest, svc: Services = Depends(get_services)):
        """
        sign a wallet up through an invite: referral edge under the invite's
        code, then the signup bonus. safe to retry from the same wallet.
        """
        wallet = _require_wallet(payload.wallet)
        if not payload.code:
            raise HTTPException(status_code=400, detail="Invite code is required")

        try:
            result = svc.invites.complete_invite_signup(payload.code, wallet, payload.password)
        except tuple(INVITE_ERROR_STATUS) as e:
            return _invite_error(e)
        except Exception:
            logger.exception("special_invite_signup_crashed", wallet=wallet)
            raise HTTPException(status_code=500, detail="Failed to complete invite signup")

        if result.success:
            return {"success": True, "data": result.to_dict()}

        distribution = result.distribution
        return JSONResponse(
            status_code=FAILURE_STATUS.get(distribution.error_code, 500),
            content={
                "success": False,
                "error": result.errors[0] if result.errors else "Distribution failed",
                "errorCode": distribution.error_code,
                "retriable": distribution.retriable,
                "data": result.to_dict(),
            },
        )

    @app.get("/api/referrals/special-invite/signups")
    def special_invite_signups(
        code: Optional[str] = Query(None, description="Invite code"),
        wallet: Optional[str] = Query(None, description="Only this wallet's signup status"),
        svc: Services = Depends(get_services),
    ):
        if not code:
            raise HTTPException(status_code=400, detail="Invite code is required")
        if wallet is not None:
            wallet = _require_wallet(wallet)
            return {"success": True, "data": svc.invites.signup_status(code, wallet)}
        return {"success": True, "data": {"code": code.strip().upper(), "signups": svc.invites.list_invite_signups(code)}}

    return app


app = create_app()
