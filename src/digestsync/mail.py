"""Outbound notification seam and plan classification.

Rendering and delivery of the summary email happen elsewhere; the job only
hands a message to a Mailer.
"""
import datetime
import json
import logging
import uuid
from typing import Protocol

from digestsync.models import Organization, Project, User
from digestsync.repository import DatabaseContext
from digestsync.utils import to_epoch, utcnow

logger = logging.getLogger(__name__)

DAILY_SUMMARY_TEMPLATE = 'project-daily-summary'


class Mailer(Protocol):

    def send_project_daily_summary(
        self,
        user: User,
        project: Project,
        start_time: datetime.datetime,
        has_submitted_events: bool,
        total: int,
        unique_total: int,
        new_total: int,
        is_free_plan: bool,
    ) -> None:
        ...


class MailQueue:
    """Mailer that enqueues messages in the mail_queue table for delivery.
    """

    def __init__(self, db: DatabaseContext, clock: callable = None):
        self.db = db
        self._clock = clock or utcnow

    @property
    def table(self) -> str:
        return self.db.tables['MailQueue']

    def send_project_daily_summary(self, user, project, start_time, has_submitted_events,
                                   total, unique_total, new_total, is_free_plan) -> None:
        payload = {
            'user_id': user.id,
            'project_id': project.id,
            'project_name': project.name,
            'start_time': start_time.isoformat(),
            'has_submitted_events': has_submitted_events,
            'total': total,
            'unique_total': unique_total,
            'new_total': new_total,
            'is_free_plan': is_free_plan,
        }
        sql = f"""
        INSERT INTO {self.table} (id, template, recipient, payload, status, created_on)
        VALUES (:id, :template, :recipient, :payload, 'queued', :created_on)
        """
        self.db.execute(sql, {
            'id': uuid.uuid4().hex,
            'template': DAILY_SUMMARY_TEMPLATE,
            'recipient': user.email_address,
            'payload': json.dumps(payload),
            'created_on': to_epoch(self._clock()),
        })
        logger.debug(f'Queued {DAILY_SUMMARY_TEMPLATE} for {user.email_address} (project {project.id})')

    def get_queued(self) -> list[dict]:
        """Return queued messages, oldest first.
        """
        sql = f"""
        SELECT id, template, recipient, payload FROM {self.table}
        WHERE status = 'queued'
        ORDER BY created_on ASC, id ASC
        """
        messages = []
        for row in self.db.query(sql):
            data = dict(row._mapping)
            if isinstance(data['payload'], str):
                data['payload'] = json.loads(data['payload'])
            messages.append(data)
        return messages


class BillingManager:

    FREE_PLAN_ID = 'EX_FREE'

    def is_free_plan(self, organization: Organization) -> bool:
        return organization.plan_id == self.FREE_PLAN_ID
