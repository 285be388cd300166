class LockNotAcquired(Exception):
    """Raised when the job lock is held by another run.
    """


class LockLost(Exception):
    """Raised when a held lock can no longer be renewed.

    Either the TTL expired and another holder took over, or the record was
    removed out from under us.
    """


class CursorExhausted(Exception):
    """Raised when paging past the last page of a schedule cursor.
    """
