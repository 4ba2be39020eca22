import logging
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Dict, Optional

from errors import TransientError
from notifications import LoggingNotifier, Notifier
from payments.gateway import MockGateway, StripeGateway
from persistence.db import Database, init_db
from settings import Settings

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class KeyedLocks:
    """
    One mutex per key (vehicle id). Serialises check-then-insert for the same vehicle
    inside this process; the row lock taken in the same section covers other processes.
    """

    def __init__(self):
        self._locks: Dict[str, Lock] = {}
        self._guard = Lock()

    def _lock_for(self, key: str) -> Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = Lock()
            return lock

    @contextmanager
    def hold(self, key: str, timeout: float = 10.0):
        lock = self._lock_for(key)
        if not lock.acquire(timeout=timeout):
            raise TransientError(f"Timed out waiting for booking lock on {key}")
        try:
            yield
        finally:
            lock.release()


class BookingContext:
    """
    Everything a core operation needs, built once at process start and passed explicitly.
    """

    def __init__(self, settings: Settings, database: Optional[Database] = None, gateway=None,
                 notifier: Optional[Notifier] = None, clock: Callable[[], datetime] = utcnow):
        self.settings = settings
        self.db = database or Database(settings.database_url)
        if gateway is None:
            gateway = StripeGateway(settings.stripe_api_key) if settings.stripe_api_key else MockGateway()
        self.gateway = gateway
        self.notifier = notifier or LoggingNotifier()
        self.clock = clock
        self.vehicle_locks = KeyedLocks()

    def init_storage(self):
        init_db(self.db)

    def now(self) -> datetime:
        return self.clock()

    def notify(self, event: str, payload: dict) -> None:
        # best-effort: delivery problems never fail a booking operation
        try:
            self.notifier.emit(event, payload)
        except Exception:
            logger.exception("Notification %s failed", event)

    def close(self):
        self.db.dispose()


def with_retries(fn: Callable, attempts: int = 3, backoff: float = 0.2, sleep=time.sleep):
    """
    Call fn() retrying TransientError up to `attempts` times with exponential backoff.
    Any other error propagates immediately; the last TransientError is re-raised.
    """
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except TransientError as exc:
            if attempt == attempts:
                raise
            delay = backoff * (2 ** (attempt - 1))
            logger.warning("Transient failure (%s), retry %d/%d in %.2fs", exc, attempt, attempts - 1, delay)
            sleep(delay)
