"""
Ledger store: engine, sessions and conditional (compare-and-set) updates.

Uses DATABASE_URL for PostgreSQL when set; otherwise SQLite. All state
transitions go through compare_and_set so concurrent job instances
coordinate through the database: an UPDATE filtered on the expected
status either wins (rowcount 1) or loses (rowcount 0) without side effects.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterable, Iterator

from sqlalchemy import create_engine, update
from sqlalchemy.orm import Session, sessionmaker

from backend_payrail.config.env import get_database_url
from backend_payrail.database.models import Base
from backend_payrail.payrail_logging import get_logger

logger = get_logger(__name__)


def _redact_url(url: str) -> str:
    return url.split("?")[0].split("@")[-1].split("//")[-1]


class LedgerStore:
    """Owns one engine and session factory. One instance per process (or per test)."""

    def __init__(self, url: str | None = None, *, echo: bool = False) -> None:
        self.url = url or get_database_url()
        connect_args: dict[str, Any] = {}
        if self.url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine = create_engine(
            self.url, connect_args=connect_args, pool_pre_ping=True, echo=echo
        )
        self._session_factory = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )
        logger.info("ledger_store_engine", url=_redact_url(self.url))

    def create_all(self) -> None:
        """Create tables if they do not exist. Safe to call on every startup."""
        try:
            Base.metadata.create_all(bind=self.engine)
            logger.info("ledger_store_init_db", url=_redact_url(self.url))
        except Exception as e:
            logger.exception("ledger_store_init_db_failed", error=str(e))
            raise

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """One session = one transaction. Commits on success, rolls back on error."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def compare_and_set(
    session: Session,
    model: Any,
    row_id: Any,
    *,
    expected_status: str | Iterable[str],
    values: dict[str, Any],
    conditions: Iterable[Any] = (),
) -> bool:
    """
    UPDATE model SET values WHERE id = row_id AND status IN expected [AND conditions].

    Returns True when exactly this caller performed the transition.
    """
    statuses = [expected_status] if isinstance(expected_status, str) else list(expected_status)
    stmt = (
        update(model)
        .where(model.id == row_id, model.status.in_(statuses), *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    return result.rowcount == 1


_store: LedgerStore | None = None


def get_store() -> LedgerStore:
    """Return the process-wide store, creating tables on first use."""
    global _store
    if _store is None:
        from backend_payrail.config import get_settings

        _store = LedgerStore(get_settings().database_url)
        _store.create_all()
    return _store


def set_store(store: LedgerStore | None) -> None:
    """Replace the process-wide store. Tests use this to inject a temp database."""
    global _store
    _store = store
