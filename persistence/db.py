from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.orm.exc import StaleDataError

from errors import StaleStateError, TransientError

Base = declarative_base()


class Database:
    """
    Owns the engine and session factory for one process.
    Built at startup by BookingContext and disposed at shutdown.
    """

    def __init__(self, url: str, echo: bool = False):
        connect_args = {}
        if url.startswith("sqlite"):
            # For SQLite, check_same_thread=False is required for multithreaded web servers
            connect_args = {"check_same_thread": False, "timeout": 30}
        self.url = url
        self.engine = create_engine(url, connect_args=connect_args, echo=echo)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, autocommit=False,
                                         expire_on_commit=False)

    @contextmanager
    def session(self):
        db = self.SessionLocal()
        try:
            yield db
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def dispose(self):
        self.engine.dispose()


def init_db(database: Database):
    # Import models here so they get registered with Base before creating tables
    import persistence.models  # noqa: F401
    Base.metadata.create_all(bind=database.engine)


@contextmanager
def storage_errors():
    """Translate SQLAlchemy failures into the core's error types."""
    try:
        yield
    except StaleDataError as exc:
        raise StaleStateError(f"Record was modified concurrently: {exc}")
    except (OperationalError, PoolTimeoutError) as exc:
        raise TransientError(f"Storage unavailable: {exc.__class__.__name__}")
