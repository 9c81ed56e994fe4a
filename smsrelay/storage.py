import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator, List, Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from smsrelay.exceptions import StoreUnavailable
from smsrelay.phone import mask_phone

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()

REQUIRED_TABLES = ("subscribers", "messages", "proposal_actions")


def utc_now() -> str:
    """Server timestamp, ISO-8601 UTC with microseconds so ledger rows order stably."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class Database:
    """
    Owns the SQLAlchemy engine and session factory.

    Constructed once at application startup and disposed at shutdown.
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        connect_args = {}
        engine_kwargs = {}
        if url.startswith("sqlite"):
            # check_same_thread=False is required for SQLite with FastAPI's threadpool
            connect_args["check_same_thread"] = False
            if url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection, otherwise every checkout sees an empty database
                engine_kwargs["poolclass"] = StaticPool

        self.engine = create_engine(url, connect_args=connect_args, echo=echo, **engine_kwargs)
        self.SessionLocal = sessionmaker(autoflush=False, bind=self.engine)

    def init_db(self) -> None:
        """
        Initialize the database by creating all tables.
        Called during application startup.
        """
        logger.debug(f"Initializing database with URL: {self.engine.url!r}")
        try:
            # Import models to register them with Base.metadata
            from smsrelay import models  # noqa: F401

            Base.metadata.create_all(bind=self.engine)
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Session scope for work that runs outside a request (background tasks)."""
        db = self.SessionLocal()
        try:
            yield db
        finally:
            db.close()

    def check_health(self) -> bool:
        """
        Check if the database is reachable and schema is applied.

        Returns:
            True if DB is healthy and schema exists, False otherwise.
        """
        logger.debug("Checking database health...")
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
                inspector = inspect(conn)
                missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
            if missing:
                logger.error(f"Database schema not applied, missing tables: {missing}")
                return False
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def dispose(self) -> None:
        self.engine.dispose()
        logger.info("Database connections released")


@contextmanager
def store_errors(db: Session, operation: str):
    """Roll back and re-raise any SQLAlchemy failure as StoreUnavailable."""
    try:
        yield
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Store operation failed ({operation}): {e}")
        raise StoreUnavailable(f"Failed to {operation}") from e


def _dialect_insert(db: Session):
    """Insert construct supporting ON CONFLICT for the bound dialect, if any."""
    name = db.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert
    if name == "sqlite":
        return sqlite.insert
    return None


# =============================================================================
# Subscriber Repository Functions
# =============================================================================

def upsert_active(db: Session, phone_number: str):
    """
    Create an active subscriber or re-activate an existing one.

    Runs as a single INSERT ... ON CONFLICT statement so concurrent opt-ins for
    the same number cannot create two rows.

    Args:
        db: Database session
        phone_number: Canonical phone key

    Returns:
        The active Subscriber
    """
    from smsrelay.models import Subscriber

    logger.info(f"Upserting active subscriber: {mask_phone(phone_number)}")
    now = utc_now()

    with store_errors(db, "upsert subscriber"):
        insert = _dialect_insert(db)
        if insert is not None:
            stmt = insert(Subscriber).values(
                phone_number=phone_number,
                active=True,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[Subscriber.phone_number],
                set_={"active": True, "updated_at": now},
            )
            db.execute(stmt)
            db.commit()
        else:
            try:
                db.add(Subscriber(phone_number=phone_number, active=True, created_at=now, updated_at=now))
                db.commit()
            except IntegrityError:
                db.rollback()
                db.query(Subscriber).filter(Subscriber.phone_number == phone_number).update(
                    {"active": True, "updated_at": now}
                )
                db.commit()

        return db.query(Subscriber).filter(Subscriber.phone_number == phone_number).one()


def ensure_subscriber(db: Session, phone_number: str, active: bool = False):
    """
    Return the subscriber for a phone key, creating it if missing.

    With ``active=False`` an existing row is returned untouched. With
    ``active=True`` an existing row is activated as well, so an opt-in that
    races another first message from the same number is not lost.
    """
    from smsrelay.models import Subscriber

    now = utc_now()

    with store_errors(db, "create subscriber"):
        insert = _dialect_insert(db)
        if insert is not None:
            stmt = insert(Subscriber).values(
                phone_number=phone_number,
                active=active,
                created_at=now,
                updated_at=now,
            )
            if active:
                stmt = stmt.on_conflict_do_update(
                    index_elements=[Subscriber.phone_number],
                    set_={"active": True, "updated_at": now},
                )
            else:
                stmt = stmt.on_conflict_do_nothing(index_elements=[Subscriber.phone_number])
            result = db.execute(stmt)
            db.commit()
            if result.rowcount:
                logger.info(f"Ensured subscriber {mask_phone(phone_number)} (active={active})")
        else:
            try:
                db.add(Subscriber(phone_number=phone_number, active=active, created_at=now, updated_at=now))
                db.commit()
            except IntegrityError:
                db.rollback()
                if active:
                    db.query(Subscriber).filter(Subscriber.phone_number == phone_number).update(
                        {"active": True, "updated_at": now}
                    )
                    db.commit()

        return db.query(Subscriber).filter(Subscriber.phone_number == phone_number).one()


def find_by_phone(db: Session, phone_number: str):
    """
    Retrieve a subscriber by canonical phone key.

    Returns:
        Subscriber if found, None otherwise
    """
    from smsrelay.models import Subscriber

    with store_errors(db, "look up subscriber"):
        result = db.query(Subscriber).filter(Subscriber.phone_number == phone_number).first()
    logger.debug(f"Subscriber lookup {mask_phone(phone_number)}: {'found' if result else 'not found'}")
    return result


def list_active(db: Session) -> List:
    from smsrelay.models import Subscriber

    with store_errors(db, "list active subscribers"):
        return db.query(Subscriber).filter(Subscriber.active.is_(True)).order_by(Subscriber.id.asc()).all()


def list_all(db: Session) -> List:
    from smsrelay.models import Subscriber

    with store_errors(db, "get users"):
        return db.query(Subscriber).order_by(Subscriber.id.asc()).all()


def set_active(db: Session, subscriber_id: int, active: bool) -> bool:
    """
    Set a subscriber's active flag.

    Returns:
        True if a row was updated
    """
    from smsrelay.models import Subscriber

    with store_errors(db, "update subscriber"):
        updated = db.query(Subscriber).filter(Subscriber.id == subscriber_id).update(
            {"active": active, "updated_at": utc_now()}
        )
        db.commit()

    logger.info(f"Subscriber {subscriber_id} active={active}")
    return updated > 0


# =============================================================================
# Proposal Repository Functions
# =============================================================================

def claim_proposal(db: Session, proposal_id: str, action: str, user_id: Optional[str] = None) -> bool:
    """
    Record the first action on a broadcast proposal (idempotent).

    Args:
        db: Database session
        proposal_id: Slack timestamp of the proposed message
        action: "send" or "cancel"
        user_id: Slack user who clicked

    Returns:
        True if this call claimed the proposal, False if it was already actioned
    """
    from smsrelay.models import ProposalAction

    with store_errors(db, "claim proposal"):
        try:
            db.add(ProposalAction(
                proposal_id=proposal_id,
                action=action,
                user_id=user_id,
                created_at=utc_now(),
            ))
            db.commit()
        except IntegrityError:
            # proposal_id already exists - the proposal was handled before
            db.rollback()
            logger.info(f"Proposal already actioned: {proposal_id}")
            return False

    logger.info(f"Proposal {proposal_id} claimed for {action} by {user_id}")
    return True
