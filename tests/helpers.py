from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone

from mailstat.errors import AuthenticationError, PartialFetchError
from mailstat.models import DayRange, MessageRecord, message_id
from mailstat.timestamps import utc_today

UIDVALIDITY = 7
PASSWORD = "app-password"
EMAIL = "me@example.test"


def at(day: date, hour: int = 12) -> datetime:
    return datetime.combine(day, time(hour), tzinfo=timezone.utc)


def days_ago(n: int) -> date:
    return utc_today() - timedelta(days=n)


def make_record(
    uid: int,
    sender: str = "alice@example.test",
    received_at: datetime | None = None,
    subject: str = "hello",
    uidvalidity: int = UIDVALIDITY,
    normalized: bool = True,
) -> MessageRecord:
    return MessageRecord(
        id=message_id(uidvalidity, uid),
        sender=sender,
        received_at=received_at or at(utc_today()),
        subject=subject,
        thread_key=f"<{uid}@example.test>",
        message_id=f"<{uid}@example.test>",
        normalized=normalized,
    )


class FakeMailbox:
    "Server side state shared by the sessions a test opens"

    def __init__(self, records=(), uidvalidity: int = UIDVALIDITY):
        self.records = {r.id: r for r in records}
        self.uidvalidity = uidvalidity
        self.password = PASSWORD
        self.connect_failures: list[Exception] = []
        self.list_failures: list[Exception] = []
        # id -> number of fetch calls that leave it out
        self.flaky: dict[str, int] = {}
        self.sessions: list[FakeSession] = []
        self.on_list = None

    def add(self, *records: MessageRecord) -> None:
        for record in records:
            self.records[record.id] = record

    def session(self, *_args) -> "FakeSession":
        session = FakeSession(self)
        self.sessions.append(session)
        return session

    @property
    def calls(self) -> list[str]:
        return [call for s in self.sessions for call in s.calls]


class FakeSession:
    "Stands in for MailProtocolClient"

    def __init__(self, mailbox: FakeMailbox):
        self.mailbox = mailbox
        self.calls: list[str] = []
        self.closed = False
        self.uidvalidity = None

    def connect(self) -> None:
        self.calls.append("connect")
        if self.mailbox.connect_failures:
            raise self.mailbox.connect_failures.pop(0)

    def authenticate(self, username: str, secret: str) -> None:
        self.calls.append("authenticate")
        if secret != self.mailbox.password:
            raise AuthenticationError(f"login refused for {username}")

    def select(self, folder: str) -> int:
        self.calls.append("select")
        self.uidvalidity = self.mailbox.uidvalidity
        return self.uidvalidity

    def list_message_ids(self, day_range: DayRange) -> set[str]:
        self.calls.append("list")
        if self.mailbox.on_list is not None:
            self.mailbox.on_list()
        if self.mailbox.list_failures:
            raise self.mailbox.list_failures.pop(0)
        return {
            mid for mid, r in self.mailbox.records.items() if r.received_at.date() in day_range
        }

    def fetch_metadata(self, ids) -> dict[str, MessageRecord]:
        self.calls.append("fetch")
        records = {}
        missing = set()
        for mid in ids:
            if self.mailbox.flaky.get(mid, 0) > 0:
                self.mailbox.flaky[mid] -= 1
                missing.add(mid)
            elif mid in self.mailbox.records:
                records[mid] = self.mailbox.records[mid]
            else:
                missing.add(mid)
        if missing:
            raise PartialFetchError(missing, records)
        return records

    def close(self) -> None:
        self.calls.append("close")
        self.closed = True


class Sleeper:
    def __init__(self):
        self.delays: list[float] = []

    def __call__(self, delay: float) -> None:
        self.delays.append(delay)
