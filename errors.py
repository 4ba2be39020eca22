from typing import Dict, List, Optional


class BookingError(Exception):
    """Base class for every error raised by the booking core."""

    code = "booking_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(BookingError):
    """Malformed or out-of-range input. Carries field-level messages."""

    code = "validation_error"

    def __init__(self, errors: List[Dict[str, str]], message: str = "Invalid input"):
        super().__init__(message)
        self.errors = errors

    @classmethod
    def single(cls, field: str, message: str) -> "ValidationError":
        return cls([{"field": field, "message": message}], message=message)

    @classmethod
    def from_pydantic(cls, exc) -> "ValidationError":
        errors = []
        for err in exc.errors():
            field = ".".join(str(part) for part in err.get("loc", ())) or "__root__"
            errors.append({"field": field, "message": err.get("msg", "Invalid value")})
        return cls(errors)

    def to_dict(self) -> dict:
        out = super().to_dict()
        out["errors"] = self.errors
        return out


class NotFoundError(BookingError):
    code = "not_found"

    def __init__(self, entity: str, entity_id):
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class ConflictError(BookingError):
    """The requested interval overlaps an existing booking. Pick different dates."""

    code = "date_conflict"


class UnavailableError(BookingError):
    """The vehicle is delisted or inactive."""

    code = "vehicle_unavailable"


class InvalidTransitionError(BookingError):
    code = "invalid_transition"

    def __init__(self, current: str, requested: str, reason: Optional[str] = None):
        message = f"Invalid booking state transition: {current} -> {requested}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.current = current
        self.requested = requested

    def to_dict(self) -> dict:
        out = super().to_dict()
        out.update({"current": self.current, "requested": self.requested})
        return out


class StaleStateError(BookingError):
    """A concurrent modification won the race. Reload and retry."""

    code = "stale_state"


class TransientError(BookingError):
    """Storage or gateway timeout. Safe to retry with backoff."""

    code = "transient_failure"


class GatewayVerificationError(BookingError):
    code = "gateway_verification_failed"


class PermissionDeniedError(BookingError):
    code = "permission_denied"


class PaymentGatewayError(BookingError):
    """The payment processor rejected the request."""

    code = "gateway_error"
