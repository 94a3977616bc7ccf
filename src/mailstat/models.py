from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Dict, Iterator, List, Optional

from .timestamps import utc_today

ONE_DAY = timedelta(days=1)

MessageId = str


def message_id(uidvalidity: int, uid: int) -> MessageId:
    return f"{uidvalidity}:{uid}"


def split_message_id(mid: MessageId) -> tuple[int, int]:
    uidvalidity, uid = mid.split(":", 1)
    return int(uidvalidity), int(uid)


@dataclass(frozen=True)
class DayRange:
    "Closed interval of UTC calendar days"
    start: date
    end: date

    def __post_init__(self):
        if self.start > self.end:
            raise ValueError(f"empty range {self.start} > {self.end}")

    @classmethod
    def last_days(cls, days: int, today: Optional[date] = None) -> "DayRange":
        if days < 0:
            raise ValueError("days must not be negative")
        today = today or utc_today()
        return cls(today - timedelta(days=days), today)

    def __contains__(self, day: date) -> bool:
        return self.start <= day <= self.end

    def __str__(self) -> str:
        return f"{self.start}..{self.end}"

    def days(self) -> Iterator[date]:
        day = self.start
        while day <= self.end:
            yield day
            day += ONE_DAY

    def covers(self, other: "DayRange") -> bool:
        return self.start <= other.start and other.end <= self.end

    def touches(self, other: "DayRange") -> bool:
        "Overlapping or adjacent"
        return self.start <= other.end + ONE_DAY and other.start <= self.end + ONE_DAY

    def hull(self, other: "DayRange") -> "DayRange":
        return DayRange(min(self.start, other.start), max(self.end, other.end))

    def gaps(self, requested: "DayRange") -> List["DayRange"]:
        "Parts of `requested` this range does not cover"
        pieces = []
        if requested.start < self.start:
            pieces.append(DayRange(requested.start, min(requested.end, self.start - ONE_DAY)))
        if requested.end > self.end:
            pieces.append(DayRange(max(requested.start, self.end + ONE_DAY), requested.end))
        return pieces


@dataclass(frozen=True)
class MessageRecord:
    id: MessageId
    sender: str
    received_at: datetime
    subject: str = ""
    thread_key: Optional[str] = None
    message_id: Optional[str] = None
    normalized: bool = True

    @property
    def day(self) -> date:
        return self.received_at.date()

    @property
    def domain(self) -> str:
        return self.sender.rpartition("@")[2]


@dataclass
class Snapshot:
    "Everything known about one folder of one mailbox"
    email: str
    records: Dict[MessageId, MessageRecord] = field(default_factory=dict)
    uidvalidity: Optional[int] = None
    coverage: Optional[DayRange] = None

    def __len__(self) -> int:
        return len(self.records)

    def __contains__(self, mid: MessageId) -> bool:
        return mid in self.records

    def within(self, day_range: DayRange) -> Dict[MessageId, MessageRecord]:
        return {mid: r for mid, r in self.records.items() if r.day in day_range}

    def needs_fetch(self, mid: MessageId) -> bool:
        record = self.records.get(mid)
        return record is None or not record.normalized

    def evolve(self, **changes) -> "Snapshot":
        return replace(self, **changes)
