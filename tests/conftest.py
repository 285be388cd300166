"""Pytest configuration and shared fixtures.

WHAT THIS FILE PROVIDES:
- psql_docker: PostgreSQL Docker container for tests
- postgres: SQLAlchemy engine on the container with all digest tables created
- engine: parametrized over a fresh in-memory SQLite database and the
  PostgreSQL engine, so every database test runs on both backends
- db: DatabaseContext bound to that engine

SQLite tests get their own database, PostgreSQL tests drop the digest
tables afterwards. PostgreSQL runs are skipped when Docker is not
reachable; deselect them with -m "not postgres".
"""
import logging
import time

import docker
import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from digestsync import schema
from digestsync.config import DigestConfig, build_connection_string
from digestsync.repository import DatabaseContext

logger = logging.getLogger(__name__)

APPNAME = 'digest_'

PG_CONFIG = DigestConfig(host='localhost', port=5432, dbname='digest',
                         user='postgres', password='postgres', appname=APPNAME)


def wait_for_postgres(connection_string: str, timeout: float = 30) -> None:
    """Block until the database accepts connections.
    """
    engine = create_engine(connection_string)
    deadline = time.time() + timeout
    try:
        while True:
            try:
                with engine.connect() as conn:
                    conn.execute(text('SELECT 1'))
                return
            except OperationalError:
                if time.time() > deadline:
                    raise
                time.sleep(0.5)
    finally:
        engine.dispose()


@pytest.fixture(scope='session')
def psql_docker():
    """Start PostgreSQL Docker container for testing.
    """
    try:
        client = docker.from_env()
        client.ping()
    except docker.errors.DockerException as e:
        pytest.skip(f'Docker is not available: {e}')
    try:
        existing = client.containers.get('digest_test_postgres')
        existing.stop()
        existing.remove()
    except docker.errors.NotFound:
        pass
    container = client.containers.run(
        image='postgres:17',
        auto_remove=True,
        environment={
            'POSTGRES_DB': PG_CONFIG.dbname,
            'POSTGRES_USER': PG_CONFIG.user,
            'POSTGRES_PASSWORD': PG_CONFIG.password},
        name='digest_test_postgres',
        ports={'5432/tcp': ('127.0.0.1', PG_CONFIG.port)},
        detach=True,
        remove=True,
    )
    try:
        wait_for_postgres(build_connection_string(
            PG_CONFIG.host, PG_CONFIG.port, PG_CONFIG.dbname, PG_CONFIG.user, PG_CONFIG.password))
        yield
    finally:
        container.stop()


def drop_tables(engine, appname: str = APPNAME):
    """Drop all digest tables.
    """
    tables = schema.get_table_names(appname)
    with engine.connect() as conn:
        for key in schema.TABLE_KEYS:
            conn.execute(text(f'DROP TABLE IF EXISTS {tables[key]}'))
        conn.commit()


@pytest.fixture
def postgres(psql_docker):
    """Provide SQLAlchemy engine for PostgreSQL tests.
    """
    engine = DatabaseContext(PG_CONFIG).engine
    schema.ensure_database_ready(engine, APPNAME)
    try:
        yield engine
    finally:
        drop_tables(engine, APPNAME)
        engine.dispose()


@pytest.fixture
def sqlite():
    """Provide SQLAlchemy engine on a fresh in-memory SQLite database.
    """
    engine = create_engine(
        'sqlite://',
        poolclass=StaticPool,
        connect_args={'check_same_thread': False},
    )
    schema.ensure_database_ready(engine, APPNAME)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture(params=['sqlite', pytest.param('postgres', marks=pytest.mark.postgres)])
def engine(request):
    """Provide SQLAlchemy engine with the digest schema in place.
    """
    return request.getfixturevalue(request.param)


@pytest.fixture
def db(engine):
    """Provide DatabaseContext using the test engine.
    """
    return DatabaseContext(DigestConfig(appname=APPNAME), engine=engine)
