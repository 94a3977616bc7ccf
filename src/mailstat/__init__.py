"Incremental IMAP envelope cache and mailbox statistics"
from .cache import CacheStore
from .client import MailProtocolClient
from .models import DayRange, MessageRecord, Snapshot
from .stats import Stats
from .sync import RetryPolicy, SyncEngine, SyncResult, SyncStatus

__version__ = "0.1.0"

__all__ = [
    "CacheStore",
    "DayRange",
    "MailProtocolClient",
    "MessageRecord",
    "RetryPolicy",
    "Snapshot",
    "Stats",
    "SyncEngine",
    "SyncResult",
    "SyncStatus",
]
