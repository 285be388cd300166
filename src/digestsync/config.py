import datetime
import os
from dataclasses import dataclass
from types import SimpleNamespace

JOB_NAME = 'DailySummaryJob'

LOCK_TTL = datetime.timedelta(hours=1)
RUN_INTERVAL = datetime.timedelta(hours=1)
INITIAL_DELAY = datetime.timedelta(minutes=1)

# Windows starting before (UTC midnight - STALE_AFTER) are skipped
STALE_AFTER = datetime.timedelta(days=2)

SENT_BACKOFF = datetime.timedelta(seconds=2.5)
BATCH_BACKOFF = datetime.timedelta(seconds=1)


@dataclass
class DigestConfig:
    """Configuration for the daily summary job.

    Connection parameters for database access are included so a job can
    be built from a single object.
    """
    enable_daily_summary: bool = True
    summary_hour_offset: int = 9
    page_size: int = 50

    host: str = 'localhost'
    port: int = 5432
    dbname: str = 'digest'
    user: str = 'postgres'
    password: str = 'postgres'
    appname: str = 'digest_'


def build_connection_string(host: str, port: int, dbname: str, user: str, password: str) -> str:
    """Build PostgreSQL connection string from parameters.
    """
    return (
        f'postgresql+psycopg://{user}:{password}'
        f'@{host}:{port}/{dbname}'
    )


digest = SimpleNamespace(
    sql=SimpleNamespace(
        appname=os.getenv('DIGEST_SQL_APPNAME', 'digest_'),
        host=os.getenv('DIGEST_SQL_HOST', 'localhost'),
        dbname=os.getenv('DIGEST_SQL_DATABASE', 'digest'),
        user=os.getenv('DIGEST_SQL_USERNAME', 'postgres'),
        passwd=os.getenv('DIGEST_SQL_PASSWORD', 'postgres'),
        port=int(os.getenv('DIGEST_SQL_PORT', '5432'))
    ),
    summary=SimpleNamespace(
        enabled=os.getenv('DIGEST_ENABLE_DAILY_SUMMARY', 'true').lower() == 'true',
        hour_offset=int(os.getenv('DIGEST_SUMMARY_HOUR_OFFSET', '9')),
        page_size=int(os.getenv('DIGEST_PAGE_SIZE', '50'))
    )
)


def config_from_env() -> DigestConfig:
    """Build a DigestConfig from the DIGEST_* environment settings.
    """
    return DigestConfig(
        enable_daily_summary=digest.summary.enabled,
        summary_hour_offset=digest.summary.hour_offset,
        page_size=digest.summary.page_size,
        host=digest.sql.host,
        port=digest.sql.port,
        dbname=digest.sql.dbname,
        user=digest.sql.user,
        password=digest.sql.passwd,
        appname=digest.sql.appname,
    )
