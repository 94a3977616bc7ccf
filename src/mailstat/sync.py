"""
Bring the cache up to date for a day range.

    idle -> range_computed -> cache_hit -> done
                           -> connecting -> authenticated -> listing
                              -> fetching (-> fetching ...) -> merging
                              -> persisting -> done | degraded_done

Any error moves to `failed`, tagged with the state it happened in. The
session is closed on every way out.
"""
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from loguru import logger

from .cache import CacheStore
from .client import MailProtocolClient
from .errors import (
    MailConnectionError,
    MailstatError,
    PartialFetchError,
    ProtocolError,
    StaleCacheError,
    SyncCancelled,
)
from .models import ONE_DAY, DayRange, MessageId, MessageRecord, Snapshot


class State(str, Enum):
    IDLE = "idle"
    RANGE_COMPUTED = "range_computed"
    CACHE_HIT = "cache_hit"
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    LISTING = "listing"
    FETCHING = "fetching"
    MERGING = "merging"
    PERSISTING = "persisting"
    DONE = "done"
    DEGRADED_DONE = "degraded_done"
    FAILED = "failed"


class SyncStatus(str, Enum):
    COMPLETE = "complete"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class RetryPolicy:
    """
    `attempts` bounds connect, login, search and fetch calls failing with a
    connection or protocol error. `fetch_retries` bounds how many times
    ids missing from a fetch answer are asked for again.
    """
    attempts: int = 3
    fetch_retries: int = 3
    base_delay: float = 1.0
    factor: float = 2.0
    sleep: Optional[Callable[[float], None]] = field(default=None, compare=False)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            attempts=settings.attempts,
            fetch_retries=settings.fetch_retries,
            base_delay=settings.base_delay,
            factor=settings.factor,
        )

    def delay(self, retry: int) -> float:
        return self.base_delay * self.factor ** (retry - 1)


@dataclass(frozen=True)
class SyncResult:
    status: SyncStatus
    range: DayRange
    records: Dict[MessageId, MessageRecord]
    missing: FrozenSet[MessageId] = frozenset()
    used_network: bool = False
    states: Tuple[State, ...] = ()

    @property
    def complete(self) -> bool:
        return self.status is SyncStatus.COMPLETE


def ranges_to_list(coverage: Optional[DayRange], requested: DayRange) -> List[DayRange]:
    "Day ranges to search on the server, empty when the cache covers `requested`"
    if coverage is None:
        return [requested]
    gaps = coverage.gaps(requested)
    # Mail can still arrive on the last covered day, look at it again
    return [
        DayRange(coverage.end, gap.end) if gap.start == coverage.end + ONE_DAY else gap
        for gap in gaps
    ]


def advance(coverage: Optional[DayRange], requested: DayRange) -> DayRange:
    if coverage is not None and coverage.touches(requested):
        return coverage.hull(requested)
    return requested


class SyncEngine:
    def __init__(
        self,
        store: CacheStore,
        session_factory: Callable[[], MailProtocolClient],
        username: str,
        secret: Callable[[], str],
        folder: str = "INBOX",
        retry: Optional[RetryPolicy] = None,
        cancel: Optional[threading.Event] = None,
        rebuild: bool = False,
    ):
        self.store = store
        self.session_factory = session_factory
        self.username = username
        self.secret = secret
        self.folder = folder
        self.retry = retry or RetryPolicy()
        self.cancel = cancel
        self.rebuild = rebuild
        self.state = State.IDLE
        self.states: List[State] = []
        self._session: Optional[MailProtocolClient] = None
        self._uidvalidity: Optional[int] = None

    def _enter(self, state: State) -> None:
        logger.debug("sync: {} -> {}", self.state.value, state.value)
        self.state = state
        self.states.append(state)

    def _check_cancel(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise SyncCancelled("sync cancelled")

    def _backoff(self, retry: int, what: str, error: Exception) -> None:
        delay = self.retry.delay(retry)
        logger.warning("{} failed ({}), retry {} in {:.1f}s", what, error, retry, delay)
        (self.retry.sleep or time.sleep)(delay)
        self._check_cancel()

    def _close(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            session.close()

    def sync(self, day_range: DayRange) -> SyncResult:
        self.state = State.IDLE
        self.states = [State.IDLE]
        self._uidvalidity = None
        try:
            return self._sync(day_range)
        except MailstatError as e:
            if e.stage is None:
                e.stage = self.state.value
            self._enter(State.FAILED)
            raise
        finally:
            self._close()

    def _sync(self, day_range: DayRange) -> SyncResult:
        if self.rebuild:
            snapshot = Snapshot(email=self.store.email)
        else:
            try:
                snapshot = self.store.load()
            except MailstatError as e:
                e.stage = "loading cache"
                raise
        to_list = ranges_to_list(snapshot.coverage, day_range)
        self._enter(State.RANGE_COMPUTED)
        if not to_list:
            logger.info("Cache covers {}, nothing to fetch", day_range)
            self._enter(State.CACHE_HIT)
            self._enter(State.DONE)
            return SyncResult(
                status=SyncStatus.COMPLETE,
                range=day_range,
                records=snapshot.within(day_range),
                states=tuple(self.states),
            )

        try:
            secret = self.secret()
        except MailstatError as e:
            e.stage = "credentials"
            raise
        self._open(secret)
        if snapshot.records and snapshot.uidvalidity not in (None, self._uidvalidity):
            raise StaleCacheError(
                f"{self.folder} UIDVALIDITY changed from {snapshot.uidvalidity} to "
                f"{self._uidvalidity}, the cache has to be rebuilt"
            )

        self._enter(State.LISTING)
        listed: Set[MessageId] = set()
        for gap in to_list:
            listed |= self._call("search", lambda session: session.list_message_ids(gap), secret)
        self._check_cancel()
        todo = {mid for mid in listed if snapshot.needs_fetch(mid)}
        logger.info("{} messages in {}, {} to fetch", len(listed), day_range, len(todo))

        self._enter(State.FETCHING)
        fetched, missing = self._fetch(todo, secret)
        self._check_cancel()

        self._enter(State.MERGING)
        merged = self.store.merge(snapshot, fetched).evolve(uidvalidity=self._uidvalidity)
        if not missing:
            merged = merged.evolve(coverage=advance(snapshot.coverage, day_range))

        self._enter(State.PERSISTING)
        self.store.persist(merged)
        self._close()

        status = SyncStatus.DEGRADED if missing else SyncStatus.COMPLETE
        self._enter(State.DEGRADED_DONE if missing else State.DONE)
        return SyncResult(
            status=status,
            range=day_range,
            records=merged.within(day_range),
            missing=missing,
            used_network=True,
            states=tuple(self.states),
        )

    def _open(self, secret: str) -> None:
        "Connect, login and select, with retries"
        failures = 0
        while True:
            self._check_cancel()
            self._enter(State.CONNECTING)
            self._session = self.session_factory()
            try:
                self._session.connect()
                self._session.authenticate(self.username, secret)
                uidvalidity = self._session.select(self.folder)
            except (MailConnectionError, ProtocolError) as e:
                self._close()
                failures += 1
                if failures >= self.retry.attempts:
                    raise
                self._backoff(failures, "connect", e)
                continue
            if self._uidvalidity not in (None, uidvalidity):
                raise StaleCacheError(f"{self.folder} UIDVALIDITY changed during sync")
            self._uidvalidity = uidvalidity
            self._enter(State.AUTHENTICATED)
            return

    def _call(self, what: str, call, secret: str):
        "Run `call(session)`, reconnecting or retrying on transient errors"
        state = self.state
        failures = 0
        while True:
            self._check_cancel()
            try:
                return call(self._session)
            except (MailConnectionError, ProtocolError) as e:
                failures += 1
                if failures >= self.retry.attempts:
                    raise
                self._backoff(failures, what, e)
                if isinstance(e, MailConnectionError):
                    self._close()
                    self._open(secret)
                    self._enter(state)

    def _fetch(
        self, todo: Iterable[MessageId], secret: str
    ) -> Tuple[Dict[MessageId, MessageRecord], FrozenSet[MessageId]]:
        fetched: Dict[MessageId, MessageRecord] = {}
        missing = set(todo)
        retries = 0
        while missing:
            try:
                fetched.update(
                    self._call("fetch", lambda session: session.fetch_metadata(missing), secret)
                )
                missing = set()
            except PartialFetchError as e:
                fetched.update(e.records)
                missing = set(e.missing)
                if retries >= self.retry.fetch_retries:
                    logger.warning(
                        "{} message(s) still missing after {} retries", len(missing), retries
                    )
                    break
                retries += 1
                self._backoff(retries, f"fetch of {len(missing)} message(s)", e)
                self._enter(State.FETCHING)
        return fetched, frozenset(missing)
