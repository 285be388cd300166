"""Daily summary job with lock-guarded, state machine-tracked runs.
"""
import datetime
import functools
import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum

from sqlalchemy import Engine

from digestsync.config import BATCH_BACKOFF, INITIAL_DELAY, JOB_NAME, LOCK_TTL
from digestsync.config import RUN_INTERVAL, SENT_BACKOFF, DigestConfig
from digestsync.dispatcher import NotificationDispatcher
from digestsync.exceptions import LockLost, LockNotAcquired
from digestsync.locks import Lock, LockCoordinator
from digestsync.mail import BillingManager, Mailer, MailQueue
from digestsync.models import DigestOutcome, Project
from digestsync.repository import DatabaseContext, EventRepository
from digestsync.repository import OrganizationRepository, ProjectRepository
from digestsync.repository import UserRepository
from digestsync.schema import ensure_database_ready
from digestsync.utils import log_duration, utcnow

logger = logging.getLogger(__name__)

__all__ = ['DailySummaryJob', 'JobHost', 'JobResult', 'RunState', 'RunStateMachine']


# ============================================================
# RESULTS
# ============================================================

@dataclass(frozen=True)
class JobResult:
    """Terminal result of a single run.
    """
    is_success: bool
    message: str = None
    error: Exception = None

    @classmethod
    def success_with_message(cls, message: str) -> 'JobResult':
        return cls(is_success=True, message=message)

    @classmethod
    def failed(cls, error: Exception, message: str = None) -> 'JobResult':
        return cls(is_success=False, message=message or str(error), error=error)


@dataclass
class RunSummary:
    """Bookkeeping for the most recent run.
    """
    outcomes: Counter = field(default_factory=Counter)
    pages: int = 0
    advance_calls: int = 0
    advanced: int = 0

    def record(self, outcome: DigestOutcome) -> None:
        self.outcomes[outcome] += 1

    @property
    def sent(self) -> int:
        return self.outcomes[DigestOutcome.SENT]

    @property
    def skipped(self) -> int:
        return sum(count for outcome, count in self.outcomes.items() if not outcome.is_sent)


# ============================================================
# STATE MACHINE
# ============================================================

class RunState(Enum):
    """Run lifecycle states.
    """
    IDLE = 'idle'
    LOCK_ACQUIRED = 'lock_acquired'
    PAGING = 'paging'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'
    LOCK_UNAVAILABLE = 'lock_unavailable'
    FAILED = 'failed'


TERMINAL_STATES = frozenset({RunState.COMPLETED, RunState.CANCELLED,
                             RunState.LOCK_UNAVAILABLE, RunState.FAILED})


class RunStateMachine:
    """State machine for a single run of the job.

    Transitions are validated against a fixed graph; terminal states have
    no outgoing edges.
    """

    def __init__(self):
        self.state = RunState.IDLE
        self._on_enter_callbacks = {}
        self._valid_transitions = {}
        self._setup_transition_graph()

    def _setup_transition_graph(self) -> None:
        """Define valid state transitions.
        """
        self._add_transition(RunState.IDLE, RunState.LOCK_ACQUIRED)
        self._add_transition(RunState.IDLE, RunState.LOCK_UNAVAILABLE)
        self._add_transition(RunState.IDLE, RunState.COMPLETED)
        self._add_transition(RunState.IDLE, RunState.FAILED)
        self._add_transition(RunState.LOCK_ACQUIRED, RunState.PAGING)
        self._add_transition(RunState.LOCK_ACQUIRED, RunState.CANCELLED)
        self._add_transition(RunState.LOCK_ACQUIRED, RunState.FAILED)
        self._add_transition(RunState.PAGING, RunState.COMPLETED)
        self._add_transition(RunState.PAGING, RunState.CANCELLED)
        self._add_transition(RunState.PAGING, RunState.FAILED)

    def _add_transition(self, from_state: RunState, to_state: RunState) -> None:
        self._valid_transitions.setdefault(from_state, set()).add(to_state)

    def on_enter(self, state: RunState, callback: callable) -> None:
        """Register callback when entering state.

        Args:
            state: State to monitor
            callback: Function to call on entry
        """
        self._on_enter_callbacks[state] = callback

    def transition_to(self, new_state: RunState) -> bool:
        """Attempt transition with validation.

        Args:
            new_state: Target state

        Returns
            True if transition succeeded, False if invalid
        """
        if self.state == new_state:
            return True

        if new_state not in self._valid_transitions.get(self.state, set()):
            logger.error(f'Invalid transition: {self.state.value} -> {new_state.value}')
            return False

        logger.debug(f'State transition: {self.state.value} -> {new_state.value}')
        self.state = new_state

        if new_state in self._on_enter_callbacks:
            self._on_enter_callbacks[new_state]()

        return True

    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


# ============================================================
# JOB
# ============================================================

@dataclass(frozen=True)
class JobContext:
    """Per-run context handed through the page loop.
    """
    cancellation: threading.Event
    lock: Lock
    coordinator: LockCoordinator
    ttl: datetime.timedelta = LOCK_TTL

    @property
    def is_cancellation_requested(self) -> bool:
        return self.cancellation.is_set()

    def renew_lock(self) -> datetime.datetime:
        return self.coordinator.renew(self.lock, self.ttl)


class DailySummaryJob:
    """Sends daily project summaries and advances each project's schedule.

    A run holds the cluster-wide job lock for its whole duration. Projects
    are processed sequentially page by page; every processed project has
    its pointer advanced, whether the summary was sent or skipped. A sent
    project is advanced immediately, skipped projects are advanced in one
    batch at the end of their page.
    """

    def __init__(
        self,
        projects: ProjectRepository,
        users: UserRepository,
        organizations: OrganizationRepository,
        events: EventRepository,
        locks: LockCoordinator,
        mailer: Mailer = None,
        config: DigestConfig = None,
        billing: BillingManager = None,
        clock: callable = None,
        sleep: callable = None,
        db: DatabaseContext = None,
    ):
        """Initialize the job.

        Args:
            projects: Project repository (cursor and schedule advance)
            users: User repository
            organizations: Organization repository
            events: Event repository used for summary metrics
            locks: Lock coordinator guarding the run
            mailer: Mailer receiving summaries (None disables the job)
            config: Job configuration
            billing: Plan classifier
            clock: Callable returning the current aware datetime
            sleep: Callable used for backpressure pauses (seconds)
            db: Database context owned by the job, disposed by close()
        """
        self.config = config or DigestConfig()
        self.projects = projects
        self.locks = locks
        self.mailer = mailer
        self.dispatcher = None
        if mailer is not None:
            self.dispatcher = NotificationDispatcher(users, organizations, events, mailer, billing)
        self._clock = clock or utcnow
        self._sleep = sleep or time.sleep
        self.db = db
        self.state_machine = self._create_state_machine()
        self.last_run = RunSummary()

    @classmethod
    def from_config(cls, config: DigestConfig, engine: Engine = None, mailer: Mailer = None,
                    holder: str = None, **kwargs) -> 'DailySummaryJob':
        """Build a job wired to a database.

        Args:
            config: Job configuration with connection parameters
            engine: Existing engine to use instead of building one from config
            mailer: Mailer to use (defaults to the database mail queue)
            holder: Lock holder name (defaults to hostname)
            **kwargs: Passed through to the constructor (clock, sleep, billing)
        """
        db = DatabaseContext(config, engine=engine)
        ensure_database_ready(db.engine, config.appname)
        clock = kwargs.get('clock')
        return cls(
            projects=ProjectRepository(db, clock=clock),
            users=UserRepository(db),
            organizations=OrganizationRepository(db),
            events=EventRepository(db),
            locks=LockCoordinator(db, holder=holder, clock=clock),
            mailer=mailer if mailer is not None else MailQueue(db, clock=clock),
            config=config,
            db=db,
            **kwargs,
        )

    @property
    def is_enabled(self) -> bool:
        return self.config.enable_daily_summary and self.mailer is not None

    def _create_state_machine(self) -> RunStateMachine:
        state_machine = RunStateMachine()
        for state in TERMINAL_STATES:
            state_machine.on_enter(state, functools.partial(self._log_terminal_state, state))
        return state_machine

    def _log_terminal_state(self, state: RunState) -> None:
        level = logging.WARNING if state == RunState.FAILED else logging.INFO
        logger.log(level, f'{JOB_NAME} run {state.value}: sent={self.last_run.sent} '
                          f'skipped={self.last_run.skipped} pages={self.last_run.pages}')

    def close(self) -> None:
        """Release the database resources owned by the job.
        """
        if self.db is not None:
            self.db.dispose()

    @log_duration('daily_summary_run')
    def run(self, cancellation: threading.Event = None) -> JobResult:
        """Run the job once.

        Args:
            cancellation: Event that requests the run to stop at the next page boundary

        Returns
            JobResult; lock contention and a disabled job are successful no-ops
        """
        cancellation = cancellation or threading.Event()
        self.state_machine = self._create_state_machine()
        self.last_run = RunSummary()

        if not self.is_enabled:
            self.state_machine.transition_to(RunState.COMPLETED)
            return JobResult.success_with_message('Summary notifications are disabled.')

        try:
            with self.locks.acquire(JOB_NAME, LOCK_TTL) as lock:
                self.state_machine.transition_to(RunState.LOCK_ACQUIRED)
                context = JobContext(cancellation=cancellation, lock=lock, coordinator=self.locks)
                return self._run_locked(context)
        except LockNotAcquired as e:
            logger.debug(f'{JOB_NAME} lock contention: {e}')
            self.state_machine.transition_to(RunState.LOCK_UNAVAILABLE)
            return JobResult.success_with_message('Job lock is unavailable; another run is in progress.')
        except LockLost as e:
            logger.error(f'{JOB_NAME} aborted, lock lost: {e}')
            self.state_machine.transition_to(RunState.FAILED)
            return JobResult.failed(e)
        except Exception as e:
            logger.error(f'{JOB_NAME} failed: {e}', exc_info=True)
            self.state_machine.transition_to(RunState.FAILED)
            return JobResult.failed(e)

    def _run_locked(self, context: JobContext) -> JobResult:
        if context.is_cancellation_requested:
            self.state_machine.transition_to(RunState.CANCELLED)
            return JobResult.success_with_message('Cancelled before sending summary notifications.')

        cursor = self.projects.get_by_next_summary_notification_offset(
            self.config.summary_hour_offset, self.config.page_size)
        self.state_machine.transition_to(RunState.PAGING)

        while cursor.documents:
            logger.debug(f'Got {len(cursor.documents)} projects to process.')
            self.last_run.pages += 1
            self._process_page(cursor.documents)

            if not cursor.has_more:
                break

            if context.is_cancellation_requested:
                self.state_machine.transition_to(RunState.CANCELLED)
                return JobResult.success_with_message(self._completion_message('Cancelled after sending'))

            if not cursor.next_page():
                break

            if cursor.documents:
                context.renew_lock()

        self.state_machine.transition_to(RunState.COMPLETED)
        return JobResult.success_with_message(self._completion_message('Successfully sent'))

    def _process_page(self, projects: list[Project]) -> None:
        """Dispatch every project on a page and advance all of their pointers.
        """
        projects_to_bulk_update = []
        try:
            for project in projects:
                outcome = self.dispatcher.process(project, self._clock())
                self.last_run.record(outcome)
                if outcome.is_sent:
                    self._advance([project])
                    # Pause after a summary; it just ran a backend aggregation.
                    self._sleep(SENT_BACKOFF.total_seconds())
                else:
                    projects_to_bulk_update.append(project)
        finally:
            if projects_to_bulk_update:
                self._advance(projects_to_bulk_update)

        if projects_to_bulk_update:
            self._sleep(BATCH_BACKOFF.total_seconds())

    def _advance(self, projects: list[Project]) -> None:
        self.projects.increment_next_summary_end_of_day(projects)
        self.last_run.advance_calls += 1
        self.last_run.advanced += len(projects)

    def _completion_message(self, prefix: str) -> str:
        return (f'{prefix} summary notifications: sent={self.last_run.sent} '
                f'skipped={self.last_run.skipped} pages={self.last_run.pages}')


# ============================================================
# HOST
# ============================================================

class JobHost:
    """Runs a job on a fixed interval in a background thread.

    The shutdown event doubles as the run's cancellation token, so stop()
    lets an in-flight run finish its current page and exit.
    """

    def __init__(
        self,
        job: DailySummaryJob,
        interval: datetime.timedelta = RUN_INTERVAL,
        initial_delay: datetime.timedelta = INITIAL_DELAY,
        shutdown_event: threading.Event = None,
    ):
        self.job = job
        self.name = JOB_NAME
        self.interval = interval.total_seconds()
        self.initial_delay = initial_delay.total_seconds()
        self.shutdown_event = shutdown_event or threading.Event()
        self.thread = None
        self.runs = 0
        self.last_result = None

    def start(self) -> None:
        """Start the host thread.
        """
        self.thread = threading.Thread(target=self._run, daemon=True, name=self.name)
        self.thread.start()
        logger.info(f'{self.name} host started (interval {self.interval}s)')

    def stop(self, timeout: float = 10) -> None:
        """Signal shutdown, wait for the thread to exit, then close the job.
        """
        self.shutdown_event.set()
        if self.thread and self.thread.is_alive():
            self.thread.join(timeout=timeout)
            if self.thread.is_alive():
                logger.warning(f'{self.name} thread did not stop within timeout')
                return
        self.job.close()

    def _run(self) -> None:
        if self.shutdown_event.wait(timeout=self.initial_delay):
            return

        while not self.shutdown_event.is_set():
            try:
                self.last_result = self.job.run(cancellation=self.shutdown_event)
                self.runs += 1
                if self.last_result.is_success:
                    logger.info(f'{self.name} run finished: {self.last_result.message}')
                else:
                    logger.error(f'{self.name} run failed: {self.last_result.message}')
            except Exception as e:
                logger.error(f'{self.name} host error: {e}', exc_info=True)

            if self.shutdown_event.wait(timeout=self.interval):
                break
