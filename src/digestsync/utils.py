import datetime
import functools
import logging
import time

logger = logging.getLogger(__name__)


def log_duration(operation_name: str = None):
    """Decorator to log method execution duration.

    Args:
        operation_name: Custom name for logging (defaults to function name)

    Returns
        Decorated function
    """
    def decorator(func: callable):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            name = operation_name or func.__name__
            start = time.time()
            result = func(*args, **kwargs)
            duration_ms = int((time.time() - start) * 1000)
            logger.info(f'{name} completed in {duration_ms}ms')
            return result
        return wrapper
    return decorator


def ensure_timezone_aware(dt: datetime.datetime, name: str = 'datetime') -> datetime.datetime:
    """Ensure datetime is timezone-aware.

    Args:
        dt: Datetime to check
        name: Name for error message

    Returns
        The datetime (unchanged if already aware)

    Raises
        ValueError: If datetime is naive
    """
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        raise ValueError(f'{name} must be timezone-aware (has tzinfo), got naive datetime: {dt}')
    return dt


def to_epoch(dt: datetime.datetime) -> float:
    """Convert an aware datetime to epoch seconds.
    """
    return ensure_timezone_aware(dt).timestamp()


def from_epoch(seconds: float) -> datetime.datetime:
    """Convert epoch seconds to an aware UTC datetime.
    """
    return datetime.datetime.fromtimestamp(float(seconds), tz=datetime.timezone.utc)


def start_of_day(dt: datetime.datetime) -> datetime.datetime:
    """Truncate an aware datetime to UTC midnight.
    """
    utc = ensure_timezone_aware(dt).astimezone(datetime.timezone.utc)
    return utc.replace(hour=0, minute=0, second=0, microsecond=0)


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)
