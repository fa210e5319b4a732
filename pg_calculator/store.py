"""PostgreSQL persistence for the calculator's single accumulator row.

All access goes through a psycopg_pool.ConnectionPool. The value is never
cached in process: every read and write is a round-trip to the database, and
concurrent adds are serialized with ``SELECT ... FOR UPDATE`` on the row.
"""
import logging
import time
from contextlib import contextmanager

import psycopg
from psycopg_pool import ConnectionPool

from .errors import PersistenceError, StoreUnavailable

logger = logging.getLogger(__name__)

ROW_ID = 1

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS calculator_state (
    id    integer PRIMARY KEY,
    value double precision NOT NULL
)"""

INSERT_DEFAULT_ROW_SQL = """
INSERT INTO calculator_state (id, value)
VALUES (%s, 0)
ON CONFLICT (id) DO NOTHING"""

SELECT_VALUE_SQL = "SELECT value FROM calculator_state WHERE id = %s"
SELECT_VALUE_FOR_UPDATE_SQL = "SELECT value FROM calculator_state WHERE id = %s FOR UPDATE"
UPDATE_VALUE_SQL = "UPDATE calculator_state SET value = %s WHERE id = %s"
# transaction-local, so it is gone once the connection goes back to the pool
SET_STATEMENT_TIMEOUT_SQL = "SELECT set_config('statement_timeout', %s, true)"


def create_pool(config) -> ConnectionPool:
    # small, safe pool; opened separately so startup can bound the wait
    return ConnectionPool(
        conninfo=config.database_url,
        min_size=1,
        max_size=config.pool_max_size,
        timeout=config.pool_timeout,
        max_idle=600,
        max_lifetime=3600,
        name="pg-calculator",
        open=False,
    )


def open_pool(pool: ConnectionPool, timeout: float) -> None:
    try:
        pool.open(wait=True, timeout=timeout)
    except psycopg.Error as exc:
        raise StoreUnavailable(f"error connecting to DB: {exc}") from exc


class LockedTransaction:
    """Transaction holding the accumulator row lock.

    Obtained from CalculatorStore.locked_transaction(); anything that leaves
    the block without commit() is rolled back.
    """

    def __init__(self, conn):
        self.conn = conn
        self.closed = False

    def read_locked_value(self) -> float:
        with self.conn.cursor() as cur:
            cur.execute(SELECT_VALUE_FOR_UPDATE_SQL, (ROW_ID,))
            row = cur.fetchone()
        if row is None:
            raise PersistenceError("calculator row is missing")
        return float(row[0])

    def write_value(self, new_value: float) -> None:
        with self.conn.cursor() as cur:
            cur.execute(UPDATE_VALUE_SQL, (new_value, ROW_ID))
            if cur.rowcount != 1:
                raise PersistenceError("calculator row is missing")

    def commit(self) -> None:
        self.conn.commit()
        self.closed = True

    def rollback(self) -> None:
        self.closed = True
        self.conn.rollback()


class CalculatorStore:
    def __init__(self, pool):
        self.pool = pool

    @contextmanager
    def _connection(self, error=PersistenceError, timeout=None):
        try:
            with self.pool.connection(timeout=timeout) as conn:
                yield conn
        except psycopg.Error as exc:
            raise error(f"database error: {exc}") from exc

    def open(self, timeout: float) -> None:
        """Connect and set up the schema, both within ``timeout`` seconds."""
        deadline = time.monotonic() + timeout
        open_pool(self.pool, timeout)
        self.ensure_initialized(deadline=deadline)

    def ensure_initialized(self, timeout=None, deadline=None) -> None:
        """Create the table and the default row if missing. Safe to repeat.

        With a ``timeout`` (seconds) or a ``deadline`` (``time.monotonic()``
        value), waiting for a connection and every statement share that one
        budget; the DDL can otherwise block forever on a lock held elsewhere.
        """
        if deadline is None and timeout is not None:
            deadline = time.monotonic() + timeout
        with self._connection(StoreUnavailable, self._remaining(deadline)) as conn:
            with conn.cursor() as cur:
                self._bound(cur, deadline)
                cur.execute(CREATE_TABLE_SQL)
                self._bound(cur, deadline)
                cur.execute(INSERT_DEFAULT_ROW_SQL, (ROW_ID,))
            conn.commit()
        logger.info("calculator_state table ready")

    @staticmethod
    def _remaining(deadline):
        if deadline is None:
            return None
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise StoreUnavailable("DB not ready before the startup timeout")
        return remaining

    def _bound(self, cur, deadline) -> None:
        remaining = self._remaining(deadline)
        if remaining is not None:
            cur.execute(SET_STATEMENT_TIMEOUT_SQL, (str(max(1, int(remaining * 1000))),))

    def read_value(self) -> float:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(SELECT_VALUE_SQL, (ROW_ID,))
                row = cur.fetchone()
            conn.commit()
        if row is None:
            # initialization always inserts the row, so this is a logic error upstream
            logger.warning("calculator row %s is missing, reporting 0", ROW_ID)
            return 0.0
        return float(row[0])

    @contextmanager
    def locked_transaction(self):
        with self._connection() as conn:
            tx = LockedTransaction(conn)
            try:
                yield tx
            finally:
                if not tx.closed:
                    logger.debug("rolling back uncommitted calculator transaction")
                    try:
                        tx.rollback()
                    except psycopg.Error:
                        logger.warning("rollback failed", exc_info=True)

    def close(self) -> None:
        self.pool.close()
