"""Data access for projects, users, organizations and events.
"""
import datetime
import json
import logging
from collections.abc import Iterable

from sqlalchemy import Engine, bindparam, create_engine, text

from digestsync.config import DigestConfig, build_connection_string
from digestsync.exceptions import CursorExhausted
from digestsync.models import EventCountResult, NotificationSettings
from digestsync.models import Organization, Project, TimeWindow, User
from digestsync.schema import get_table_names
from digestsync.utils import from_epoch, to_epoch, utcnow

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400

ERROR_EVENT_TYPE = 'error'


def _load_json(value):
    """Decode a jsonb column (PostgreSQL hands back objects, SQLite strings).
    """
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


# ============================================================
# DATABASE CONTEXT
# ============================================================

class DatabaseContext:
    """Manages database engine, connections, and table names.
    """

    def __init__(self, config: DigestConfig, engine: Engine = None):
        """Initialize database context.

        Args:
            config: Digest configuration with connection parameters
            engine: Existing engine to use instead of building one from config
        """
        if engine is None:
            connection_string = build_connection_string(
                config.host, config.port, config.dbname, config.user, config.password)
            engine = create_engine(connection_string, pool_pre_ping=True, pool_size=10, max_overflow=5)
        self.engine = engine
        self.tables = get_table_names(config.appname)

    @staticmethod
    def _statement(sql: str, expanding: Iterable[str] = ()):
        stmt = text(sql)
        if expanding:
            stmt = stmt.bindparams(*[bindparam(name, expanding=True) for name in expanding])
        return stmt

    def execute(self, sql: str, params: dict = None, expanding: Iterable[str] = ()):
        """Execute SQL statement with automatic commit.

        Args:
            sql: SQL statement to execute
            params: Optional parameters for the statement
            expanding: Names of list parameters used in IN clauses

        Returns
            Result proxy object
        """
        with self.engine.connect() as conn:
            result = conn.execute(self._statement(sql, expanding), params or {})
            conn.commit()
            return result

    def query(self, sql: str, params: dict = None, expanding: Iterable[str] = ()) -> list:
        """Execute query and return all rows.

        Args:
            sql: SQL query to execute
            params: Optional parameters for the query
            expanding: Names of list parameters used in IN clauses

        Returns
            List of row objects
        """
        with self.engine.connect() as conn:
            result = conn.execute(self._statement(sql, expanding), params or {})
            return list(result)

    def dispose(self) -> None:
        """Close every pooled connection of the engine.
        """
        try:
            self.engine.dispose()
        except Exception as e:
            logger.warning(f'Failed to dispose engine: {e}')


# ============================================================
# SCHEDULE CURSOR
# ============================================================

class ScheduleCursor:
    """Pull-based pagination over projects whose summary is due.

    Pages are keyed on project id, so a project returned once is never
    returned again by the same cursor even if it is still due after its
    pointer was advanced.
    """

    def __init__(self, repository: 'ProjectRepository', threshold: datetime.datetime, limit: int):
        self._repository = repository
        self.threshold = threshold
        self.limit = limit
        self.documents: list[Project] = []
        self.has_more = False
        self.page = 0
        self._last_id = None
        self._exhausted = False

    def _load(self) -> None:
        rows = self._repository.find_due_after(self.threshold, self._last_id, self.limit + 1)
        self.has_more = len(rows) > self.limit
        self.documents = rows[:self.limit]
        if self.documents:
            self._last_id = self.documents[-1].id
        self.page += 1
        logger.debug(f'Loaded page {self.page} with {len(self.documents)} due projects (has_more={self.has_more})')

    def next_page(self) -> bool:
        """Advance to the next page.

        Returns
            True if a new page was loaded, False once the cursor is exhausted

        Raises
            CursorExhausted: If called again after returning False
        """
        if self._exhausted:
            raise CursorExhausted('Schedule cursor has no more pages')
        if not self.has_more:
            self._exhausted = True
            self.documents = []
            return False
        self._load()
        return True


# ============================================================
# REPOSITORIES
# ============================================================

class ProjectRepository:
    """Reads due projects and advances their summary schedule pointer.
    """

    def __init__(self, db: DatabaseContext, clock: callable = None):
        self.db = db
        self._clock = clock or utcnow

    @property
    def table(self) -> str:
        return self.db.tables['Project']

    def _to_project(self, row) -> Project:
        data = row._mapping
        settings = _load_json(data['notification_settings']) or {}
        return Project(
            id=data['id'],
            organization_id=data['organization_id'],
            name=data['name'],
            next_summary_end_of_day=from_epoch(data['next_summary_end_of_day']),
            notification_settings={user_id: NotificationSettings.from_dict(value)
                                   for user_id, value in settings.items()},
        )

    def save(self, project: Project) -> None:
        """Insert or replace a project record.
        """
        sql = f"""
        INSERT INTO {self.table} (id, organization_id, name, next_summary_end_of_day, notification_settings)
        VALUES (:id, :organization_id, :name, :next_summary, :settings)
        ON CONFLICT (id) DO UPDATE
        SET organization_id = EXCLUDED.organization_id,
            name = EXCLUDED.name,
            next_summary_end_of_day = EXCLUDED.next_summary_end_of_day,
            notification_settings = EXCLUDED.notification_settings
        """
        settings = {user_id: {'send_daily_summary': s.send_daily_summary}
                    for user_id, s in project.notification_settings.items()}
        self.db.execute(sql, {
            'id': project.id,
            'organization_id': project.organization_id,
            'name': project.name,
            'next_summary': round(to_epoch(project.next_summary_end_of_day)),
            'settings': json.dumps(settings),
        })

    def get_by_id(self, project_id: str) -> Project | None:
        sql = f'SELECT * FROM {self.table} WHERE id = :id'
        rows = self.db.query(sql, {'id': project_id})
        return self._to_project(rows[0]) if rows else None

    def find_due_after(self, threshold: datetime.datetime, after_id: str | None, limit: int) -> list[Project]:
        """Return up to limit due projects with id greater than after_id.
        """
        sql = f"""
        SELECT * FROM {self.table}
        WHERE next_summary_end_of_day < :threshold
        {'AND id > :after_id' if after_id is not None else ''}
        ORDER BY id ASC
        LIMIT :limit
        """
        params = {'threshold': int(to_epoch(threshold)), 'limit': limit}
        if after_id is not None:
            params['after_id'] = after_id
        return [self._to_project(row) for row in self.db.query(sql, params)]

    def get_by_next_summary_notification_offset(self, hour_offset: int, limit: int = 50) -> ScheduleCursor:
        """Open a cursor over projects whose next summary is due.

        A project is due once its window ended more than hour_offset hours
        ago. The threshold is fixed when the cursor is opened.

        Args:
            hour_offset: Hours after UTC midnight at which summaries go out
            limit: Maximum projects per page

        Returns
            ScheduleCursor positioned on the first page
        """
        if limit <= 0:
            raise ValueError(f'limit must be positive, got {limit}')
        threshold = self._clock() - datetime.timedelta(hours=hour_offset)
        cursor = ScheduleCursor(self, threshold, limit)
        cursor._load()
        return cursor

    def increment_next_summary_end_of_day(self, projects: Iterable[Project]) -> int:
        """Move the schedule pointer of every project forward by one day.

        Args:
            projects: Projects to advance

        Returns
            Number of rows updated
        """
        ids = sorted({project.id for project in projects})
        if not ids:
            return 0
        sql = f"""
        UPDATE {self.table}
        SET next_summary_end_of_day = next_summary_end_of_day + :step
        WHERE id IN :ids
        """
        result = self.db.execute(sql, {'step': SECONDS_PER_DAY, 'ids': ids}, expanding=['ids'])
        logger.debug(f'Advanced next summary for {result.rowcount} projects')
        return result.rowcount


class UserRepository:

    def __init__(self, db: DatabaseContext):
        self.db = db

    @property
    def table(self) -> str:
        return self.db.tables['User']

    def save(self, user: User) -> None:
        sql = f"""
        INSERT INTO {self.table}
        (id, email_address, is_email_address_verified, email_notifications_enabled, organization_ids)
        VALUES (:id, :email, :verified, :enabled, :orgs)
        ON CONFLICT (id) DO UPDATE
        SET email_address = EXCLUDED.email_address,
            is_email_address_verified = EXCLUDED.is_email_address_verified,
            email_notifications_enabled = EXCLUDED.email_notifications_enabled,
            organization_ids = EXCLUDED.organization_ids
        """
        self.db.execute(sql, {
            'id': user.id,
            'email': user.email_address,
            'verified': user.is_email_address_verified,
            'enabled': user.email_notifications_enabled,
            'orgs': json.dumps(sorted(user.organization_ids)),
        })

    def get_by_ids(self, user_ids: Iterable[str]) -> list[User]:
        """Look up users by id; unknown ids are ignored.
        """
        ids = sorted(set(user_ids))
        if not ids:
            return []
        sql = f'SELECT * FROM {self.table} WHERE id IN :ids ORDER BY id'
        users = []
        for row in self.db.query(sql, {'ids': ids}, expanding=['ids']):
            data = row._mapping
            users.append(User(
                id=data['id'],
                email_address=data['email_address'],
                is_email_address_verified=bool(data['is_email_address_verified']),
                email_notifications_enabled=bool(data['email_notifications_enabled']),
                organization_ids=frozenset(_load_json(data['organization_ids']) or []),
            ))
        return users


class OrganizationRepository:

    def __init__(self, db: DatabaseContext):
        self.db = db

    @property
    def table(self) -> str:
        return self.db.tables['Organization']

    def save(self, organization: Organization) -> None:
        sql = f"""
        INSERT INTO {self.table} (id, name, plan_id)
        VALUES (:id, :name, :plan_id)
        ON CONFLICT (id) DO UPDATE
        SET name = EXCLUDED.name, plan_id = EXCLUDED.plan_id
        """
        self.db.execute(sql, {'id': organization.id, 'name': organization.name,
                              'plan_id': organization.plan_id})

    def get_by_id(self, organization_id: str) -> Organization | None:
        sql = f'SELECT id, name, plan_id FROM {self.table} WHERE id = :id'
        rows = self.db.query(sql, {'id': organization_id})
        if not rows:
            return None
        return Organization(id=rows[0][0], name=rows[0][1], plan_id=rows[0][2])


class EventRepository:
    """Aggregation queries over submitted events.
    """

    def __init__(self, db: DatabaseContext):
        self.db = db

    @property
    def table(self) -> str:
        return self.db.tables['Event']

    def add(self, event_id: str, organization_id: str, project_id: str, stack_id: str,
            date: datetime.datetime, type: str = ERROR_EVENT_TYPE, is_first_occurrence: bool = False) -> None:
        sql = f"""
        INSERT INTO {self.table} (id, organization_id, project_id, stack_id, type, is_first_occurrence, date)
        VALUES (:id, :organization_id, :project_id, :stack_id, :type, :first, :date)
        """
        self.db.execute(sql, {
            'id': event_id,
            'organization_id': organization_id,
            'project_id': project_id,
            'stack_id': stack_id,
            'type': type,
            'first': is_first_occurrence,
            'date': to_epoch(date),
        })

    def count_in_window(self, organization_id: str, project_id: str, window: TimeWindow) -> EventCountResult:
        """Count error events inside window.

        Both window bounds are inclusive; window.end is the last second of
        the day.

        Returns
            EventCountResult with total, distinct stacks and first occurrences
        """
        sql = f"""
        SELECT COUNT(*) AS total,
               COUNT(DISTINCT stack_id) AS unique_total,
               COALESCE(SUM(CASE WHEN is_first_occurrence THEN 1 ELSE 0 END), 0) AS new_total
        FROM {self.table}
        WHERE organization_id = :organization_id
          AND project_id = :project_id
          AND type = :type
          AND date >= :start AND date <= :end
        """
        row = self.db.query(sql, {
            'organization_id': organization_id,
            'project_id': project_id,
            'type': ERROR_EVENT_TYPE,
            'start': to_epoch(window.start),
            'end': to_epoch(window.end),
        })[0]
        return EventCountResult(total=int(row[0]), unique_total=int(row[1]), new_total=int(row[2]))

    def get_count_by_project_id(self, project_id: str) -> int:
        """Count every event ever submitted for a project.
        """
        sql = f'SELECT COUNT(*) FROM {self.table} WHERE project_id = :project_id'
        return int(self.db.query(sql, {'project_id': project_id})[0][0])
