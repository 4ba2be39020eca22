import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import text

from auth import AuthError, Principal, decode_token
from booking_schemas import (BookingCreate, BookingRecord, CancelRequest, CheckoutSession, DateChange,
                             PaymentIntentRequest, RefundRequest, RefundResult, StatusOverride,
                             VehicleBookings)
from context import BookingContext, with_retries
from errors import (BookingError, ConflictError, GatewayVerificationError, InvalidTransitionError,
                    NotFoundError, PaymentGatewayError, PermissionDeniedError, StaleStateError,
                    TransientError, UnavailableError, ValidationError)
from payments.checkout import record_intent
from payments.refunds import refund
from settings import load_settings
from txn_manager import BookingTransactionManager
from webhooks.webhooks import router as webhook_router

logger = logging.getLogger(__name__)

STATUS_CODES = {
    ValidationError: 422,
    NotFoundError: 404,
    ConflictError: 409,
    UnavailableError: 409,
    InvalidTransitionError: 409,
    StaleStateError: 409,
    TransientError: 503,
    GatewayVerificationError: 400,
    PermissionDeniedError: 403,
    PaymentGatewayError: 502,
}

auth_scheme = HTTPBearer(auto_error=False)


def get_context(request: Request) -> BookingContext:
    return request.app.state.ctx


def get_manager(ctx: BookingContext = Depends(get_context)) -> BookingTransactionManager:
    return BookingTransactionManager(ctx)


def get_current_principal(
    ctx: BookingContext = Depends(get_context),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
) -> Principal:
    if credentials is None:
        raise HTTPException(status_code=401, detail="No token provided, authorization denied")
    try:
        return decode_token(credentials.credentials, ctx.settings.jwt_secret, ctx.settings.jwt_algorithm)
    except AuthError as exc:
        raise HTTPException(status_code=401, detail=str(exc))


def _run(ctx: BookingContext, fn):
    return with_retries(fn, attempts=ctx.settings.transient_retry_attempts,
                        backoff=ctx.settings.transient_retry_backoff)


def create_app(ctx: Optional[BookingContext] = None) -> FastAPI:
    owns_context = ctx is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        context = ctx
        if context is None:
            settings = load_settings()
            logging.basicConfig(level=settings.log_level,
                                format="%(asctime)s %(levelname)s %(name)s: %(message)s")
            context = BookingContext(settings)
        context.init_storage()
        app.state.ctx = context
        yield
        if owns_context:
            context.close()

    app = FastAPI(title="Car Rental Booking API", lifespan=lifespan)
    if ctx is not None:
        app.state.ctx = ctx

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(BookingError)
    async def booking_error_handler(request: Request, exc: BookingError):
        status = STATUS_CODES.get(type(exc), 400)
        if isinstance(exc, GatewayVerificationError):
            logger.warning("Webhook signature verification failed: %s", exc.message)
        return JSONResponse(status_code=status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=422, content=ValidationError.from_pydantic(exc).to_dict())

    # -------- Bookings --------
    @app.post("/api/bookings", response_model=BookingRecord, status_code=201)
    def create_booking(payload: BookingCreate, manager: BookingTransactionManager = Depends(get_manager),
                       principal: Principal = Depends(get_current_principal)):
        return _run(manager.ctx, lambda: manager.create_booking(principal, payload))

    @app.get("/api/bookings/{booking_id}", response_model=BookingRecord)
    def get_booking(booking_id: str, manager: BookingTransactionManager = Depends(get_manager),
                    principal: Principal = Depends(get_current_principal)):
        return _run(manager.ctx, lambda: manager.get_booking(principal, booking_id))

    @app.post("/api/bookings/{booking_id}/cancel", response_model=BookingRecord)
    def cancel_booking(booking_id: str, payload: Optional[CancelRequest] = None,
                       manager: BookingTransactionManager = Depends(get_manager),
                       principal: Principal = Depends(get_current_principal)):
        payload = payload or CancelRequest()
        return _run(manager.ctx, lambda: manager.cancel_booking(
            principal, booking_id, reason=payload.reason, expected_version=payload.expected_version))

    @app.delete("/api/bookings/{booking_id}", response_model=BookingRecord)
    def delete_booking(booking_id: str, manager: BookingTransactionManager = Depends(get_manager),
                       principal: Principal = Depends(get_current_principal)):
        # bookings are never removed; DELETE is a cancellation
        return _run(manager.ctx, lambda: manager.cancel_booking(principal, booking_id))

    @app.put("/api/bookings/{booking_id}/dates", response_model=BookingRecord)
    def change_dates(booking_id: str, payload: DateChange,
                     manager: BookingTransactionManager = Depends(get_manager),
                     principal: Principal = Depends(get_current_principal)):
        return _run(manager.ctx, lambda: manager.reschedule(
            principal, booking_id, payload.start_date, payload.end_date,
            expected_version=payload.expected_version))

    @app.post("/api/bookings/{booking_id}/pickup", response_model=BookingRecord)
    def pickup(booking_id: str, manager: BookingTransactionManager = Depends(get_manager),
               principal: Principal = Depends(get_current_principal)):
        return _run(manager.ctx, lambda: manager.mark_active(principal, booking_id))

    @app.post("/api/bookings/{booking_id}/return", response_model=BookingRecord)
    def return_vehicle(booking_id: str, manager: BookingTransactionManager = Depends(get_manager),
                       principal: Principal = Depends(get_current_principal)):
        return _run(manager.ctx, lambda: manager.mark_completed(principal, booking_id))

    @app.put("/api/admin/bookings/{booking_id}/status", response_model=BookingRecord)
    def override_status(booking_id: str, payload: StatusOverride,
                        manager: BookingTransactionManager = Depends(get_manager),
                        principal: Principal = Depends(get_current_principal)):
        return _run(manager.ctx, lambda: manager.override_status(
            principal, booking_id, payload.status, note=payload.note,
            expected_version=payload.expected_version))

    @app.get("/api/vehicles/{vehicle_id}/booked-dates", response_model=VehicleBookings)
    def booked_dates(vehicle_id: str, manager: BookingTransactionManager = Depends(get_manager)):
        intervals = _run(manager.ctx, lambda: manager.booked_dates(vehicle_id))
        return VehicleBookings(vehicle_id=vehicle_id, intervals=intervals)

    # -------- Payments --------
    @app.post("/api/payments/create-session", response_model=CheckoutSession)
    def create_session(payload: PaymentIntentRequest, ctx: BookingContext = Depends(get_context),
                       principal: Principal = Depends(get_current_principal)):
        return _run(ctx, lambda: record_intent(ctx, principal, payload.booking_id, payload.currency))

    @app.post("/api/payments/refund", response_model=RefundResult)
    def refund_payment(payload: RefundRequest, ctx: BookingContext = Depends(get_context),
                       principal: Principal = Depends(get_current_principal)):
        return _run(ctx, lambda: refund(ctx, principal, payload.payment_id, payload.amount, payload.reason))

    app.include_router(webhook_router)

    @app.get("/health")
    def health(ctx: BookingContext = Depends(get_context)):
        status = {"backend": "running", "database": "connected"}
        try:
            with ctx.db.session() as db:
                db.execute(text("SELECT 1"))
        except Exception as e:
            status["database"] = f"error: {e.__class__.__name__}"
        return status

    return app


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(create_app(), host="0.0.0.0", port=port)
