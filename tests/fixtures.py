"""Shared test fixtures, utilities, and helpers.

USE THIS FILE FOR:
- Config builders and fake collaborators (clock, sleep, mailer)
- Recording repository subclasses used to assert call patterns
- Data factories for projects, users, organizations and events
"""
import datetime
import logging
from dataclasses import dataclass, field
from types import SimpleNamespace

import pytest

from digestsync.config import DigestConfig
from digestsync.job import DailySummaryJob
from digestsync.locks import LockCoordinator
from digestsync.models import NotificationSettings, Organization, Project, User
from digestsync.repository import EventRepository, OrganizationRepository
from digestsync.repository import ProjectRepository, UserRepository

logger = logging.getLogger(__name__)

UTC = datetime.timezone.utc

NOW = datetime.datetime(2024, 1, 10, 0, 5, tzinfo=UTC)
POINTER = datetime.datetime(2024, 1, 10, tzinfo=UTC)
ORG_ID = 'org1'


# ============================================================================
# CONFIG BUILDERS
# ============================================================================

def make_config(**overrides) -> DigestConfig:
    """Create DigestConfig with test-friendly values.

    summary_hour_offset defaults to 0 so a project is due as soon as its
    window has ended.
    """
    defaults = {
        'enable_daily_summary': True,
        'summary_hour_offset': 0,
        'page_size': 50,
        'appname': 'digest_',
    }
    defaults.update(overrides)
    return DigestConfig(**defaults)


# ============================================================================
# FAKE COLLABORATORS
# ============================================================================

class FrozenClock:
    """Clock returning a fixed time until advanced.
    """

    def __init__(self, now: datetime.datetime = NOW):
        self.now = now

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, delta: datetime.timedelta) -> None:
        self.now += delta


class RecordingSleep:
    """Sleep replacement recording durations; optional hook runs after each call.
    """

    def __init__(self, hook: callable = None):
        self.calls = []
        self.hook = hook

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.hook is not None:
            self.hook(seconds)


@dataclass
class SentSummary:
    user_id: str
    project_id: str
    start_time: datetime.datetime
    has_submitted_events: bool
    total: int
    unique_total: int
    new_total: int
    is_free_plan: bool


@dataclass
class RecordingMailer:
    """Mailer that records calls and can fail for selected users.
    """
    fail_for: set = field(default_factory=set)
    sent: list = field(default_factory=list)
    attempts: list = field(default_factory=list)

    def send_project_daily_summary(self, user, project, start_time, has_submitted_events,
                                   total, unique_total, new_total, is_free_plan):
        self.attempts.append(user.id)
        if user.id in self.fail_for:
            raise RuntimeError(f'SMTP rejected {user.email_address}')
        self.sent.append(SentSummary(user.id, project.id, start_time, has_submitted_events,
                                     total, unique_total, new_total, is_free_plan))


class RecordingProjectRepository(ProjectRepository):
    """ProjectRepository that records cursor opens and advance batches.
    """

    def __init__(self, db, clock=None, fail_on_advance: bool = False):
        super().__init__(db, clock=clock)
        self.opened = 0
        self.fetches = 0
        self.advance_calls = []
        self.fail_on_advance = fail_on_advance

    def get_by_next_summary_notification_offset(self, hour_offset, limit=50):
        self.opened += 1
        return super().get_by_next_summary_notification_offset(hour_offset, limit)

    def find_due_after(self, threshold, after_id, limit):
        self.fetches += 1
        return super().find_due_after(threshold, after_id, limit)

    def increment_next_summary_end_of_day(self, projects):
        ids = tuple(project.id for project in projects)
        self.advance_calls.append(ids)
        if self.fail_on_advance:
            raise RuntimeError('advance failed')
        return super().increment_next_summary_end_of_day(projects)

    @property
    def calls(self) -> int:
        return self.opened + self.fetches + len(self.advance_calls)


class SpyEventRepository(EventRepository):

    def __init__(self, db):
        super().__init__(db)
        self.window_queries = []
        self.fallback_queries = []

    def count_in_window(self, organization_id, project_id, window):
        self.window_queries.append((organization_id, project_id, window))
        return super().count_in_window(organization_id, project_id, window)

    def get_count_by_project_id(self, project_id):
        self.fallback_queries.append(project_id)
        return super().get_count_by_project_id(project_id)


class SpyUserRepository(UserRepository):
    """UserRepository recording lookups; raises for ids in fail_for.
    """

    def __init__(self, db, fail_for: set = None):
        super().__init__(db)
        self.lookups = []
        self.fail_for = fail_for or set()

    def get_by_ids(self, user_ids):
        user_ids = list(user_ids)
        self.lookups.append(user_ids)
        if self.fail_for.intersection(user_ids):
            raise RuntimeError('user store unavailable')
        return super().get_by_ids(user_ids)


class RecordingLockCoordinator(LockCoordinator):

    def __init__(self, db, holder='node1', clock=None):
        super().__init__(db, holder=holder, clock=clock)
        self.renewals = 0

    def renew(self, lock, ttl):
        self.renewals += 1
        return super().renew(lock, ttl)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def repos(db, clock):
    """Bundle of recording repositories and fakes sharing one database.
    """
    return SimpleNamespace(
        db=db,
        clock=clock,
        sleep=RecordingSleep(),
        mailer=RecordingMailer(),
        projects=RecordingProjectRepository(db, clock=clock),
        users=SpyUserRepository(db),
        organizations=OrganizationRepository(db),
        events=SpyEventRepository(db),
        locks=RecordingLockCoordinator(db, clock=clock),
    )


def create_job(repos, mailer=..., **config_overrides) -> DailySummaryJob:
    """Build a DailySummaryJob over the repos bundle.

    Pass mailer=None to build a job without a mailer.
    """
    return DailySummaryJob(
        projects=repos.projects,
        users=repos.users,
        organizations=repos.organizations,
        events=repos.events,
        locks=repos.locks,
        mailer=repos.mailer if mailer is ... else mailer,
        config=make_config(**config_overrides),
        clock=repos.clock,
        sleep=repos.sleep,
    )


# ============================================================================
# DATA FACTORIES
# ============================================================================

def add_organization(repos, org_id: str = ORG_ID, plan_id: str = 'EX_SMALL') -> Organization:
    organization = Organization(id=org_id, name=f'Org {org_id}', plan_id=plan_id)
    repos.organizations.save(organization)
    return organization


def add_user(repos, user_id: str, verified: bool = True, enabled: bool = True,
             organization_ids=(ORG_ID,)) -> User:
    user = User(
        id=user_id,
        email_address=f'{user_id}@example.com',
        is_email_address_verified=verified,
        email_notifications_enabled=enabled,
        organization_ids=frozenset(organization_ids),
    )
    repos.users.save(user)
    return user


def add_project(repos, project_id: str, pointer: datetime.datetime = POINTER,
                org_id: str = ORG_ID, subscribers: dict = None) -> Project:
    """Create a project; subscribers maps user id to the send_daily_summary flag.
    """
    settings = {user_id: NotificationSettings(send_daily_summary=flag)
                for user_id, flag in (subscribers or {}).items()}
    project = Project(
        id=project_id,
        organization_id=org_id,
        name=f'Project {project_id}',
        next_summary_end_of_day=pointer,
        notification_settings=settings,
    )
    repos.projects.save(project)
    return project


def add_event(repos, event_id: str, project_id: str, date: datetime.datetime,
              stack_id: str = 'stack1', type: str = 'error', first: bool = False,
              org_id: str = ORG_ID) -> None:
    repos.events.add(event_id, org_id, project_id, stack_id, date, type=type,
                     is_first_occurrence=first)


def pointer_of(repos, project_id: str) -> datetime.datetime:
    return repos.projects.get_by_id(project_id).next_summary_end_of_day
