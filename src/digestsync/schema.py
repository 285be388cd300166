import logging

from sqlalchemy import Engine, inspect, text

logger = logging.getLogger(__name__)

TABLE_KEYS = ['Project', 'Organization', 'User', 'Event', 'JobLock', 'MailQueue']


def get_table_names(appname: str = 'digest_') -> dict[str, str]:
    """Get table names based on appname prefix.

    Args
        appname: Application name prefix for tables

    Returns
        Dictionary containing table names
    """
    return {
        'Project': f'{appname}project',
        'Organization': f'{appname}organization',
        'User': f'{appname}user',
        'Event': f'{appname}event',
        'JobLock': f'{appname}job_lock',
        'MailQueue': f'{appname}mail_queue',
    }


def verify_tables_exist(engine: Engine, appname: str = 'digest_') -> dict[str, bool]:
    """Verify which required tables exist in the database.

    Args:
        engine: SQLAlchemy engine
        appname: Application name prefix for tables

    Returns
        Dictionary mapping table keys to existence status
    """
    tables = get_table_names(appname)
    existing = set(inspect(engine).get_table_names())
    return {key: tables[key] in existing for key in TABLE_KEYS}


def _create_domain_tables(engine: Engine, tables: dict[str, str]) -> None:
    """Create the tables read by the job (Project, Organization, User, Event).

    Instants are stored as epoch seconds so the same DDL works on
    PostgreSQL and SQLite.
    """
    Project = tables['Project']
    Organization = tables['Organization']
    User = tables['User']
    Event = tables['Event']

    with engine.connect() as conn:
        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Organization} (
    id varchar not null,
    name varchar not null,
    plan_id varchar not null,
    primary key (id)
);
        """))

        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Project} (
    id varchar not null,
    organization_id varchar not null,
    name varchar not null,
    next_summary_end_of_day bigint not null,
    notification_settings jsonb not null,
    primary key (id)
);
        """))

        conn.execute(text(f'CREATE INDEX IF NOT EXISTS idx_{Project}_next_summary ON {Project}(next_summary_end_of_day)'))

        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {User} (
    id varchar not null,
    email_address varchar not null,
    is_email_address_verified boolean not null default false,
    email_notifications_enabled boolean not null default true,
    organization_ids jsonb not null,
    primary key (id)
);
        """))

        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Event} (
    id varchar not null,
    organization_id varchar not null,
    project_id varchar not null,
    stack_id varchar not null,
    type varchar not null,
    is_first_occurrence boolean not null default false,
    date double precision not null,
    primary key (id)
);
        """))

        conn.execute(text(f'CREATE INDEX IF NOT EXISTS idx_{Event}_project_date ON {Event}(project_id, date)'))

        conn.commit()

    logger.debug(f'Domain tables verified: {Project}, {Organization}, {User}, {Event}')


def _create_job_tables(engine: Engine, tables: dict[str, str]) -> None:
    """Create tables owned by the job (JobLock, MailQueue).
    """
    JobLock = tables['JobLock']
    MailQueue = tables['MailQueue']

    with engine.connect() as conn:
        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {JobLock} (
    name varchar not null,
    holder varchar not null,
    token varchar not null,
    acquired_at double precision not null,
    expires_at double precision not null,
    primary key (name)
);
        """))

        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {MailQueue} (
    id varchar not null,
    template varchar not null,
    recipient varchar not null,
    payload jsonb not null,
    status varchar not null default 'queued',
    created_on double precision not null,
    primary key (id)
);
        """))

        conn.execute(text(f'CREATE INDEX IF NOT EXISTS idx_{MailQueue}_status ON {MailQueue}(status)'))

        conn.commit()

    logger.debug(f'Job tables verified: {JobLock}, {MailQueue}')


def ensure_database_ready(engine: Engine, appname: str = 'digest_') -> None:
    """Ensure database has all required tables.

    Safe to call repeatedly - uses CREATE TABLE IF NOT EXISTS.

    Args:
        engine: SQLAlchemy engine
        appname: Application name prefix for tables
    """
    tables = get_table_names(appname)

    table_status = verify_tables_exist(engine, appname)
    missing_tables = [k for k in TABLE_KEYS if not table_status.get(k, False)]
    if missing_tables:
        logger.info(f'Creating missing tables: {missing_tables}')

    try:
        _create_domain_tables(engine, tables)
        _create_job_tables(engine, tables)
    except Exception as e:
        logger.error(f'Failed to create tables: {e}')
        raise

    logger.info('Database structure verified and ready')
