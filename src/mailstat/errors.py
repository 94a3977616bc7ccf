"Errors raised while syncing a mailbox"
from typing import Optional


class MailstatError(Exception):
    "Base class, `stage` is set by the sync engine when it knows it"
    stage: Optional[str] = None


class ConfigError(MailstatError):
    pass


class CredentialError(MailstatError):
    pass


class MailConnectionError(MailstatError):
    "Transport failure: DNS, refused, reset, timeout"


ConnectionError = MailConnectionError


class TlsNegotiationError(MailstatError):
    pass


class AuthenticationError(MailstatError):
    "The server rejected the credentials, resending them will not help"


class ProtocolError(MailstatError):
    "Malformed or unexpected server response"


class PartialFetchError(MailstatError):
    "Some ids got no usable answer, `records` holds the ones that did"

    def __init__(self, missing, records=None):
        self.missing = frozenset(missing)
        self.records = dict(records or {})
        super().__init__(f"{len(self.missing)} message(s) not fetched")


class CacheCorruptError(MailstatError):
    pass


class StaleCacheError(CacheCorruptError):
    "The folder UIDVALIDITY changed, cached ids no longer name the same messages"


class CacheReadError(MailstatError):
    "The cache file exists but could not be read"


class CacheWriteError(MailstatError):
    "The cache file could not be written, the previous one is untouched"


class SyncCancelled(MailstatError):
    pass
