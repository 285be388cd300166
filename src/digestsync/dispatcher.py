import datetime
import logging

from digestsync.config import STALE_AFTER
from digestsync.mail import BillingManager, Mailer
from digestsync.models import DigestMetrics, DigestOutcome, Organization
from digestsync.models import Project, TimeWindow, User
from digestsync.repository import EventRepository, OrganizationRepository
from digestsync.repository import UserRepository
from digestsync.utils import ensure_timezone_aware, start_of_day

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Decides and sends the daily summary for a single project.

    The dispatcher never touches the project's schedule pointer; the
    caller advances it whatever the outcome.
    """

    def __init__(
        self,
        users: UserRepository,
        organizations: OrganizationRepository,
        events: EventRepository,
        mailer: Mailer,
        billing: BillingManager = None,
        stale_after: datetime.timedelta = STALE_AFTER,
    ):
        self.users = users
        self.organizations = organizations
        self.events = events
        self.mailer = mailer
        self.billing = billing or BillingManager()
        self.stale_after = stale_after

    def is_stale(self, window: TimeWindow, now: datetime.datetime) -> bool:
        """A window is stale once it starts before UTC midnight of now minus stale_after.
        """
        return window.start < start_of_day(now) - self.stale_after

    def resolve_recipients(self, project: Project) -> list[User]:
        """Return users opted into the summary who are eligible to receive it.
        """
        user_ids = project.opted_in_user_ids()
        if not user_ids:
            return []
        return [user for user in self.users.get_by_ids(user_ids) if user.is_eligible_for(project)]

    def compute_metrics(self, organization: Organization, project: Project, window: TimeWindow) -> DigestMetrics:
        result = self.events.count_in_window(organization.id, project.id, window)
        has_activity = result.total > 0
        if not has_activity:
            has_activity = self.events.get_count_by_project_id(project.id) > 0
        return DigestMetrics(total_count=result.total, unique_count=result.unique_total,
                             new_count=result.new_total, has_activity=has_activity)

    def process(self, project: Project, now: datetime.datetime) -> DigestOutcome:
        """Send the summary for the project's next window, or classify why not.

        Args:
            project: Project whose next summary is due
            now: Current time

        Returns
            DigestOutcome.SENT if at least one recipient was notified,
            otherwise the skip reason
        """
        ensure_timezone_aware(now, 'now')
        window = TimeWindow.ending_at(project.next_summary_end_of_day)

        if self.is_stale(window, now):
            logger.info(f'Skipping daily summary older than two days for project: {project.name} ({project.id})')
            return DigestOutcome.SKIPPED_STALE

        users = self.resolve_recipients(project)
        if not users:
            logger.info(f'Project "{project.name}" ({project.id}) has no users to send summary to.')
            return DigestOutcome.SKIPPED_NO_RECIPIENTS

        organization = self.organizations.get_by_id(project.organization_id)
        if organization is None:
            logger.info(f'The organization "{project.organization_id}" for project "{project.name}" '
                        f'may have been deleted. No summaries will be sent.')
            return DigestOutcome.SKIPPED_NO_ORGANIZATION

        logger.info(f'Sending daily summary: users={len(users)} project={project.id}')
        metrics = self.compute_metrics(organization, project, window)
        is_free_plan = self.billing.is_free_plan(organization)

        for user in users:
            logger.info(f'Queueing "{project.name}" daily summary email ({window.start}-{window.end}) '
                        f'for user {user.email_address}.')
            try:
                self.mailer.send_project_daily_summary(
                    user, project, window.start, metrics.has_activity,
                    metrics.total_count, metrics.unique_count, metrics.new_count, is_free_plan)
            except Exception as e:
                # One failed recipient does not stop the others; the window is still consumed.
                logger.warning(f'Daily summary for user {user.id} on project {project.id} failed: {e}')

        logger.info(f'Done sending daily summary: users={len(users)} project={project.name} events={metrics.total_count}')
        return DigestOutcome.SENT
