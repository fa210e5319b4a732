import threading
import time
from contextlib import contextmanager

import psycopg
import pytest
from psycopg.errors import QueryCanceled
from psycopg_pool import PoolTimeout

from pg_calculator.service import CalculatorService
from pg_calculator.store import (
    CREATE_TABLE_SQL,
    INSERT_DEFAULT_ROW_SQL,
    SELECT_VALUE_FOR_UPDATE_SQL,
    SELECT_VALUE_SQL,
    SET_STATEMENT_TIMEOUT_SQL,
    UPDATE_VALUE_SQL,
    CalculatorStore,
)
from pg_calculator.web_calculator_app import create_app


class FakeDatabase:
    """Just enough of calculator_state to run the real store code.

    Committed rows live in ``rows``; a connection's UPDATEs stay pending until
    commit. ``FOR UPDATE`` takes ``row_lock`` and holds it until the
    transaction ends, like a PostgreSQL row lock.
    """

    def __init__(self):
        self.table_exists = False
        self.rows = {}
        self.row_lock = threading.Lock()
        self.executed = []
        self.commits = 0
        self.rollbacks = 0
        self.fail_on = None
        self.unreachable = False
        self.pause = 0.0
        # seconds CREATE TABLE waits on a lock held by "another session"
        self.ddl_delay = 0.0
        self.connect_delay = 0.0
        self.statement_timeouts = []


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self.db = conn.db
        self.rowcount = -1
        self._row = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=()):
        db = self.db
        db.executed.append(sql)
        if db.fail_on is not None and db.fail_on in sql:
            raise psycopg.OperationalError("server closed the connection unexpectedly")

        if sql == SET_STATEMENT_TIMEOUT_SQL:
            self.conn.statement_timeout = int(params[0])
            db.statement_timeouts.append(int(params[0]))
        elif sql == CREATE_TABLE_SQL:
            if db.ddl_delay:
                self._wait_for_lock(db.ddl_delay)
            db.table_exists = True
        elif sql == INSERT_DEFAULT_ROW_SQL:
            db.rows.setdefault(params[0], 0.0)
        elif sql == SELECT_VALUE_SQL:
            self._row = self._select(params[0])
        elif sql == SELECT_VALUE_FOR_UPDATE_SQL:
            if not self.conn.holds_lock:
                db.row_lock.acquire()
                self.conn.holds_lock = True
            self._row = self._select(params[0])
            if db.pause:
                time.sleep(db.pause)
        elif sql == UPDATE_VALUE_SQL:
            value, row_id = params
            if row_id in db.rows:
                self.conn.pending[row_id] = value
                self.rowcount = 1
            else:
                self.rowcount = 0
        else:
            raise AssertionError(f"unexpected SQL: {sql}")

    def _wait_for_lock(self, seconds):
        limit = self.conn.statement_timeout
        if limit and seconds * 1000 > limit:
            time.sleep(limit / 1000)
            raise QueryCanceled("canceling statement due to statement timeout")
        time.sleep(seconds)

    def _select(self, row_id):
        if row_id in self.conn.pending:
            return (self.conn.pending[row_id],)
        if row_id in self.db.rows:
            return (self.db.rows[row_id],)
        return None

    def fetchone(self):
        return self._row


class FakeConnection:
    def __init__(self, db):
        self.db = db
        self.pending = {}
        self.holds_lock = False
        self.statement_timeout = 0

    @property
    def in_transaction(self):
        return bool(self.pending) or self.holds_lock

    def cursor(self):
        return FakeCursor(self)

    def commit(self):
        self.db.rows.update(self.pending)
        self.db.commits += 1
        self._end()

    def rollback(self):
        self.db.rollbacks += 1
        self._end()

    def _end(self):
        self.statement_timeout = 0
        self.pending.clear()
        if self.holds_lock:
            self.holds_lock = False
            self.db.row_lock.release()


class FakePool:
    def __init__(self, db):
        self.db = db
        self.opened = False
        self.closed = True
        self.timeouts = []

    def open(self, wait=False, timeout=30.0):
        if self.db.connect_delay:
            time.sleep(self.db.connect_delay)
        if self.db.unreachable:
            raise PoolTimeout(f"pool initialization incomplete after {timeout} sec")
        self.opened = True
        self.closed = False

    def close(self):
        self.closed = True

    @contextmanager
    def connection(self, timeout=None):
        self.timeouts.append(timeout)
        if self.db.unreachable:
            raise PoolTimeout(f"couldn't get a connection after {timeout} sec")
        conn = FakeConnection(self.db)
        try:
            yield conn
        except BaseException:
            if conn.in_transaction:
                conn.rollback()
            raise
        else:
            if conn.in_transaction:
                conn.commit()


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def pool(db):
    return FakePool(db)


@pytest.fixture
def store(pool):
    store = CalculatorStore(pool)
    store.ensure_initialized()
    return store


@pytest.fixture
def service(store):
    return CalculatorService(store)


@pytest.fixture
def static_dir(tmp_path):
    (tmp_path / "index.html").write_text("<h1>calculator</h1>")
    (tmp_path / "app.js").write_text("console.log('calc');")
    return tmp_path


@pytest.fixture
def app(service, static_dir):
    app = create_app(service, str(static_dir))
    app.config.update(TESTING=True)
    return app


@pytest.fixture
def client(app):
    return app.test_client()
