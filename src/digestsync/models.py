"""Domain values read and produced by the daily summary job.
"""
import datetime
from dataclasses import dataclass, field
from enum import Enum

from digestsync.utils import ensure_timezone_aware

ONE_DAY = datetime.timedelta(days=1)
ONE_SECOND = datetime.timedelta(seconds=1)


@dataclass(frozen=True)
class NotificationSettings:
    """Per-user notification preferences stored on a project.
    """
    send_daily_summary: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> 'NotificationSettings':
        return cls(send_daily_summary=bool(data.get('send_daily_summary', False)))


def wants_daily_summary(settings: NotificationSettings) -> bool:
    return settings.send_daily_summary


@dataclass(frozen=True)
class Project:
    """Subscriber entity whose schedule pointer drives the digest.

    next_summary_end_of_day marks the end of the next digest window and
    only moves forward, one day at a time. It is stored in whole seconds.
    """
    id: str
    organization_id: str
    name: str
    next_summary_end_of_day: datetime.datetime
    notification_settings: dict[str, NotificationSettings] = field(default_factory=dict)

    def __post_init__(self):
        ensure_timezone_aware(self.next_summary_end_of_day, 'next_summary_end_of_day')
        if self.next_summary_end_of_day.microsecond:
            raise ValueError(f'next_summary_end_of_day must be a whole second, got {self.next_summary_end_of_day}')

    def opted_in_user_ids(self) -> list[str]:
        """Return ids of users whose settings ask for the daily summary.
        """
        return [user_id for user_id, settings in self.notification_settings.items()
                if wants_daily_summary(settings)]


@dataclass(frozen=True)
class User:
    id: str
    email_address: str
    is_email_address_verified: bool
    email_notifications_enabled: bool
    organization_ids: frozenset[str] = frozenset()

    def is_eligible_for(self, project: Project) -> bool:
        """Check whether this user may receive digests for project.
        """
        return (self.is_email_address_verified
                and self.email_notifications_enabled
                and project.organization_id in self.organization_ids)


@dataclass(frozen=True)
class Organization:
    id: str
    name: str
    plan_id: str


@dataclass(frozen=True)
class TimeWindow:
    """One-day digest window.

    start is the pointer minus one day, end is the pointer minus one
    second (the last whole second covered by the window).
    """
    start: datetime.datetime
    end: datetime.datetime

    @classmethod
    def ending_at(cls, next_summary_end_of_day: datetime.datetime) -> 'TimeWindow':
        ensure_timezone_aware(next_summary_end_of_day, 'next_summary_end_of_day')
        return cls(start=next_summary_end_of_day - ONE_DAY,
                   end=next_summary_end_of_day - ONE_SECOND)


@dataclass(frozen=True)
class EventCountResult:
    """Raw aggregation returned by the event store for a window.
    """
    total: int = 0
    unique_total: int = 0
    new_total: int = 0


@dataclass(frozen=True)
class DigestMetrics:
    total_count: int
    unique_count: int
    new_count: int
    has_activity: bool


class DigestOutcome(Enum):
    """Per-project result of a dispatch attempt.
    """
    SENT = 'sent'
    SKIPPED_STALE = 'skipped_stale'
    SKIPPED_NO_RECIPIENTS = 'skipped_no_recipients'
    SKIPPED_NO_ORGANIZATION = 'skipped_no_organization'

    @property
    def is_sent(self) -> bool:
        return self is DigestOutcome.SENT
