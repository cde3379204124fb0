import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from redis.asyncio import Redis

from .admin import router as admin_router
from .config import configure_logging, get_settings
from .db import Base, SessionLocal, engine, transaction
from .deps import Services, build_services, get_redis, get_services
from .errors import ConcurrencyConflictError, DomainError, ErrorCode, InvalidSignatureError, NotFoundError
from .idempotency import claim, get_cached_response, release, set_cached_response
from .models import AuditLog
from .payments import FAILED, SUCCEEDED
from .rate_limit import token_bucket
from .schemas import (
    AnalyticsOut,
    CheckInReq,
    ConfirmationOut,
    EventOut,
    PaymentIntentOut,
    PreviewOut,
    PreviewReq,
    RegistrationOut,
    ReserveReq,
    ResendConfirmationReq,
    StartPaymentReq,
    VehicleOut,
)
from .security import verify_checkin_token, verify_payment_notification
from .store import RegistrationStore

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.EVENT_NOT_UPCOMING: 422,
    ErrorCode.CAPACITY_EXCEEDED: 422,
    ErrorCode.NOT_ELIGIBLE: 422,
    ErrorCode.INVALID_AMOUNT: 422,
    ErrorCode.ALREADY_REGISTERED: 409,
    ErrorCode.ALREADY_RESOLVED: 409,
    ErrorCode.ALREADY_CHECKED_IN: 409,
    ErrorCode.CONCURRENCY_CONFLICT: 409,
    ErrorCode.INVALID_SIGNATURE: 400,
    ErrorCode.PAYMENT_PROCESSOR_ERROR: 502,
}

PAYMENT_EVENT_OUTCOMES = {
    "payment.succeeded": SUCCEEDED,
    "payment.failed": FAILED,
}


# -------------------------
# Routes
# -------------------------

router = APIRouter()


@router.get("/health")
def health():
    return {"ok": True}


@router.post("/registrations", status_code=201, response_model=RegistrationOut)
def reserve(req: ReserveReq, services: Services = Depends(get_services)):
    return services.capacity.reserve(req.event_id, req.vehicle_id, req.user_id)


@router.get("/registrations/{registration_id}", response_model=RegistrationOut)
def get_registration(registration_id: str, services: Services = Depends(get_services)):
    with transaction(services.sessions) as db:
        registration = RegistrationStore(db).get(registration_id)
    if registration is None:
        raise NotFoundError("Registration")
    return registration


@router.get("/events/{event_id}/registrations", response_model=list[RegistrationOut])
def list_event_registrations(event_id: str, services: Services = Depends(get_services)):
    with transaction(services.sessions) as db:
        return RegistrationStore(db).for_event(event_id)


@router.get("/users/{user_id}/registrations", response_model=list[RegistrationOut])
def list_user_registrations(user_id: str, services: Services = Depends(get_services)):
    with transaction(services.sessions) as db:
        return RegistrationStore(db).for_user(user_id)


@router.get("/vehicles/{vehicle_id}/registration", response_model=RegistrationOut)
def get_vehicle_registration(vehicle_id: str, services: Services = Depends(get_services)):
    with transaction(services.sessions) as db:
        registrations = RegistrationStore(db).for_vehicle(vehicle_id)
    if not registrations:
        raise NotFoundError("Registration")
    return registrations[0]


@router.post("/registrations/{registration_id}/payment", response_model=PaymentIntentOut)
def start_payment(registration_id: str, req: StartPaymentReq, services: Services = Depends(get_services)):
    registration, intent = services.payments.start_payment(registration_id, req.user_id, req.amount)
    return PaymentIntentOut(
        registration=RegistrationOut.model_validate(registration),
        payment_id=intent.id,
        client_secret=intent.client_secret,
        amount=intent.amount,
        currency=intent.currency,
    )


@router.post("/registrations/{registration_id}/confirmation", response_model=ConfirmationOut)
def resend_confirmation(registration_id: str, req: ResendConfirmationReq, services: Services = Depends(get_services)):
    sent = services.notifier.resend_confirmation(registration_id, req.user_id)
    return ConfirmationOut(registration_id=registration_id, sent=sent)


# -------------------------
# Payment processor callback
# -------------------------
@router.post("/webhooks/payments")
async def payment_webhook(
    request: Request,
    signature: str | None = Header(default=None, alias="Processor-Signature"),
    services: Services = Depends(get_services),
    redis=Depends(get_redis),
):
    body = await request.body()
    try:
        notification = verify_payment_notification(body, signature, services.settings.PAYMENT_WEBHOOK_SECRET)
    except ValueError:
        logger.warning("rejected payment notification with bad signature")
        raise InvalidSignatureError()

    outcome = PAYMENT_EVENT_OUTCOMES.get(notification["type"])
    if outcome is None:
        logger.info("ignored payment notification type %s", notification["type"])
        return {"ok": True, "result": "ignored"}

    delivery_id = str(notification["id"])
    cached = await get_cached_response(redis, delivery_id, namespace="webhook")
    if cached:
        return cached

    # concurrent copies of one delivery: the first claims it, the rest get 409 and are retried
    if not await claim(redis, delivery_id, services.settings.WEBHOOK_CLAIM_TTL_SECONDS, namespace="webhook-claim"):
        logger.info("payment delivery %s is already being applied", delivery_id)
        raise ConcurrencyConflictError()

    try:
        result = await run_in_threadpool(
            services.payments.apply_outcome,
            outcome,
            registration_id=notification.get("registration_id"),
            stripe_payment_id=notification.get("payment_id"),
        )
    except Exception:
        await release(redis, delivery_id, namespace="webhook-claim")
        raise
    resp = {
        "ok": True,
        "result": result.result,
        "detail": result.detail,
        "registration_id": result.registration.id,
        "payment_status": result.registration.payment_status,
    }
    await set_cached_response(
        redis, delivery_id, resp,
        ttl_seconds=services.settings.WEBHOOK_REPLAY_TTL_SECONDS, namespace="webhook",
    )
    return resp


# -------------------------
# Check-in gate
# -------------------------
@router.post("/checkin")
async def check_in(
    req: CheckInReq,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    services: Services = Depends(get_services),
    redis=Depends(get_redis),
):
    settings = services.settings
    decision_id = str(uuid.uuid4())
    ip = request.client.host if request.client else "unknown"
    ua = request.headers.get("user-agent", "")

    async def decide(status: str, reason: str, event_id=None, registration=None) -> dict:
        resp = {
            "status": status,
            "reason_code": reason,
            "registration_id": registration.id if registration else None,
            "decision_id": decision_id,
        }
        if registration is not None:
            resp["registration"] = RegistrationOut.model_validate(registration).model_dump(mode="json")
        if idempotency_key:
            await set_cached_response(redis, idempotency_key, resp, ttl_seconds=settings.IDEMPOTENCY_TTL_SECONDS)
        await run_in_threadpool(
            _audit, services, decision_id, ip, ua, event_id,
            registration.id if registration else None, status, reason,
        )
        return resp

    # Idempotency
    if idempotency_key:
        cached = await get_cached_response(redis, idempotency_key)
        if cached:
            return cached

    # Rate limit per scanning device
    allowed = await token_bucket(
        redis,
        key=f"scan:{ip}",
        capacity=settings.SCAN_RATE_CAPACITY,
        refill_per_sec=settings.SCAN_RATE_PER_MINUTE / 60,
    )
    if not allowed:
        return await decide("REJECTED", "RATE_LIMITED", req.event_id)

    # Verify token
    try:
        payload = verify_checkin_token(req.qr_code_data, settings.CHECKIN_SIGNING_SECRET)
    except ValueError as e:
        return await decide("REJECTED", str(e), req.event_id)

    if req.event_id and payload["event_id"] != req.event_id:
        return await decide("REJECTED", "WRONG_EVENT", req.event_id)

    try:
        registration = await run_in_threadpool(services.checkin.check_in, req.qr_code_data, req.checked_in_by)
    except DomainError as e:
        return await decide("REJECTED", e.code.value, payload["event_id"])

    return await decide("ACCEPTED", "OK", registration.event_id, registration)


@router.post("/checkin/preview", response_model=PreviewOut)
def preview_check_in(req: PreviewReq, services: Services = Depends(get_services)):
    preview = services.checkin.preview(req.qr_code_data)
    return PreviewOut(
        registration=RegistrationOut.model_validate(preview.registration),
        event=EventOut.model_validate(preview.event) if preview.event else None,
        vehicle=VehicleOut.model_validate(preview.vehicle) if preview.vehicle else None,
        already_checked_in=preview.already_checked_in,
    )


def _audit(services: Services, decision_id: str, ip: str, ua: str, event_id: str | None,
           registration_id: str | None, status: str, reason: str) -> None:
    try:
        with transaction(services.sessions) as db:
            db.add(AuditLog(
                decision_id=decision_id, ip=ip, user_agent=ua, event_id=event_id,
                registration_id=registration_id, status=status, reason_code=reason,
            ))
    except Exception:
        # the scan decision stands even when its audit row cannot be written
        logger.exception("failed to write audit log for decision %s", decision_id)


# -------------------------
# Listing analytics
# -------------------------
@router.post("/vehicles/{vehicle_id}/views", response_model=AnalyticsOut)
def track_view(vehicle_id: str, services: Services = Depends(get_services)):
    services.analytics.increment(vehicle_id, "views")
    return AnalyticsOut(vehicle_id=vehicle_id, **services.analytics.get(vehicle_id))


@router.post("/vehicles/{vehicle_id}/shares", response_model=AnalyticsOut)
def track_share(vehicle_id: str, services: Services = Depends(get_services)):
    services.analytics.increment(vehicle_id, "shares")
    return AnalyticsOut(vehicle_id=vehicle_id, **services.analytics.get(vehicle_id))


@router.get("/vehicles/{vehicle_id}/analytics", response_model=AnalyticsOut)
def get_analytics(vehicle_id: str, services: Services = Depends(get_services)):
    return AnalyticsOut(vehicle_id=vehicle_id, **services.analytics.get(vehicle_id))


def create_app(services: Services | None = None, redis=None) -> FastAPI:
    settings = services.settings if services else get_settings()
    lifespan = None
    if services is None:
        configure_logging(settings)
        services = build_services(SessionLocal, settings)

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            Base.metadata.create_all(bind=engine)
            yield
            services.close()
            await app.state.redis.aclose()

    app = FastAPI(title="Lotpass Registrations", version="1.0.0", lifespan=lifespan)
    app.state.services = services
    app.state.redis = redis if redis is not None else Redis.from_url(settings.REDIS_URL, decode_responses=True)

    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError):
        return JSONResponse(
            status_code=ERROR_STATUS.get(exc.code, 400),
            content={"code": exc.code.value, "message": exc.message},
        )

    app.include_router(admin_router)
    app.include_router(router)
    return app


app = create_app()
