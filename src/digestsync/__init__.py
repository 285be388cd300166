__version__ = '0.1.0'

from digestsync.config import DigestConfig as DigestConfig
from digestsync.config import build_connection_string as build_connection_string
from digestsync.config import config_from_env as config_from_env
from digestsync.exceptions import LockLost as LockLost
from digestsync.exceptions import LockNotAcquired as LockNotAcquired
from digestsync.job import DailySummaryJob as DailySummaryJob
from digestsync.job import JobHost as JobHost
from digestsync.job import JobResult as JobResult
from digestsync.schema import get_table_names as get_table_names
