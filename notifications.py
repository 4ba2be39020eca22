import logging
from typing import List, Tuple

logger = logging.getLogger(__name__)


class Notifier:
    """
    Boundary to the external email/push delivery services.
    Implementations must not block; BookingContext.notify() swallows their failures.
    """

    def emit(self, event: str, payload: dict) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    def emit(self, event: str, payload: dict) -> None:
        logger.info("notification %s booking=%s", event, payload.get("booking_id"))


class RecordingNotifier(Notifier):
    """Keeps emitted events in memory. Used by the demo script and tests."""

    def __init__(self):
        self.events: List[Tuple[str, dict]] = []

    def emit(self, event: str, payload: dict) -> None:
        self.events.append((event, payload))

    def names(self) -> List[str]:
        return [name for name, _ in self.events]
