"Counting over a synced snapshot"
from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from .models import DayRange, MessageRecord
from .sync import SyncResult, SyncStatus
from .timestamps import is_erroneous


@dataclass(frozen=True)
class Stats:
    status: SyncStatus
    total: int
    by_sender: Counter
    by_domain: Counter
    by_thread: Counter
    by_day: Dict[date, int]
    missing: FrozenSet[str] = field(default_factory=frozenset)
    skipped: int = 0

    @property
    def complete(self) -> bool:
        return self.status is SyncStatus.COMPLETE

    @property
    def distinct_senders(self) -> int:
        return len(self.by_sender)

    @property
    def missing_count(self) -> int:
        return len(self.missing)

    @classmethod
    def compute(
        cls,
        records: Iterable[MessageRecord],
        status: SyncStatus = SyncStatus.COMPLETE,
        missing: Iterable[str] = (),
        day_range: Optional[DayRange] = None,
    ) -> "Stats":
        by_sender = Counter()
        by_domain = Counter()
        by_thread = Counter()
        by_day = Counter()
        total = skipped = 0
        for record in records:
            if is_erroneous(record.received_at):
                skipped += 1
                continue
            total += 1
            by_sender[record.sender] += 1
            by_domain[record.domain] += 1
            by_thread[record.thread_key or record.id] += 1
            by_day[record.day] += 1
        if day_range is not None:
            days = {day: by_day.get(day, 0) for day in day_range.days()}
        else:
            days = dict(sorted(by_day.items()))
        return cls(
            status=status,
            total=total,
            by_sender=by_sender,
            by_domain=by_domain,
            by_thread=by_thread,
            by_day=days,
            missing=frozenset(missing),
            skipped=skipped,
        )

    @classmethod
    def from_sync(cls, result: SyncResult) -> "Stats":
        return cls.compute(
            result.records.values(), result.status, result.missing, result.range
        )


def top(counter: Counter, n: Optional[int] = None) -> List[Tuple[str, int]]:
    "Most common first, ties by name"
    ranked = sorted(counter.items(), key=lambda kv: (-kv[1], kv[0]))
    return ranked if n is None else ranked[:n]
