"""
The on-disk cache: one JSON document per mailbox folder.

    {"version": 1, "email": ..., "uidvalidity": ...,
     "coverage": {"start": "YYYY-MM-DD", "end": "YYYY-MM-DD"},
     "messages": {"<uidvalidity>:<uid>": {"sender": ..., "received_at": ...}}}

Writes go to a temporary file next to the target, then replace it.
"""
import os
import tempfile
from datetime import date
from pathlib import Path
from typing import Mapping, Optional, Union

import orjson
from loguru import logger

from .errors import CacheCorruptError, CacheReadError, CacheWriteError
from .models import DayRange, MessageId, MessageRecord, Snapshot, split_message_id
from .timestamps import format_utc, parse_stored

CACHE_VERSION = 1


def _record_to_json(record: MessageRecord) -> dict:
    if record.normalized:
        received_at = format_utc(record.received_at)
    else:
        # Still unverified, keep it zone-less until a sync corrects it
        received_at = record.received_at.strftime("%Y-%m-%dT%H:%M:%S")
    return {
        "sender": record.sender,
        "received_at": received_at,
        "subject": record.subject,
        "thread_key": record.thread_key,
        "message_id": record.message_id,
    }


def _optional_str(raw: dict, key: str) -> Optional[str]:
    value = raw.get(key)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"{key} must be a string")
    return value


def _record_from_json(mid: MessageId, raw) -> MessageRecord:
    if not isinstance(raw, dict):
        raise ValueError("record must be an object")
    split_message_id(mid)
    sender = raw["sender"]
    if not isinstance(sender, str) or not isinstance(raw["received_at"], str):
        raise ValueError("sender and received_at must be strings")
    received_at, normalized = parse_stored(raw["received_at"])
    return MessageRecord(
        id=mid,
        sender=sender,
        received_at=received_at,
        subject=_optional_str(raw, "subject") or "",
        thread_key=_optional_str(raw, "thread_key"),
        message_id=_optional_str(raw, "message_id"),
        normalized=normalized,
    )


def _coverage_from_json(raw) -> Optional[DayRange]:
    if raw is None:
        return None
    return DayRange(date.fromisoformat(raw["start"]), date.fromisoformat(raw["end"]))


def dumps(snapshot: Snapshot) -> bytes:
    coverage = None
    if snapshot.coverage is not None:
        coverage = {"start": snapshot.coverage.start, "end": snapshot.coverage.end}
    payload = {
        "version": CACHE_VERSION,
        "email": snapshot.email,
        "uidvalidity": snapshot.uidvalidity,
        "coverage": coverage,
        "messages": {mid: _record_to_json(r) for mid, r in snapshot.records.items()},
    }
    return orjson.dumps(payload, option=orjson.OPT_INDENT_2 | orjson.OPT_SORT_KEYS) + b"\n"


def loads(data: bytes, email: str, source: str = "cache") -> Snapshot:
    try:
        raw = orjson.loads(data)
    except orjson.JSONDecodeError as e:
        raise CacheCorruptError(f"{source}: not JSON: {e}") from e
    if not isinstance(raw, dict):
        raise CacheCorruptError(f"{source}: expected an object")
    if raw.get("version") != CACHE_VERSION:
        raise CacheCorruptError(f"{source}: unsupported version {raw.get('version')!r}")
    owner = raw.get("email")
    if not isinstance(owner, str) or owner.lower() != email.lower():
        raise CacheCorruptError(f"{source}: belongs to {owner!r}, not {email!r}")
    try:
        messages = raw["messages"]
        if not isinstance(messages, dict):
            raise ValueError("messages must be an object")
        uidvalidity = raw.get("uidvalidity")
        if uidvalidity is not None and not isinstance(uidvalidity, int):
            raise ValueError("uidvalidity must be an integer")
        return Snapshot(
            email=owner,
            records={mid: _record_from_json(mid, r) for mid, r in messages.items()},
            uidvalidity=uidvalidity,
            coverage=_coverage_from_json(raw.get("coverage")),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise CacheCorruptError(f"{source}: {e!r}") from e


class CacheStore:
    "Snapshot persistence. Without a path nothing is read or written."

    def __init__(self, path: Union[str, Path, None], email: str):
        self.path = Path(path).expanduser() if path is not None else None
        self.email = email

    def load(self) -> Snapshot:
        if self.path is None:
            return Snapshot(email=self.email)
        try:
            data = self.path.read_bytes()
        except FileNotFoundError:
            logger.info("Cache file {} not found, will create it", self.path)
            return Snapshot(email=self.email)
        except OSError as e:
            raise CacheReadError(f"{self.path}: cannot read: {e}") from e
        snapshot = loads(data, self.email, source=str(self.path))
        logger.debug("{} messages cached in {}", len(snapshot), self.path)
        return snapshot

    @staticmethod
    def merge(existing: Snapshot, incoming: Mapping[MessageId, MessageRecord]) -> Snapshot:
        """
        Union by id. The cached record wins, except when its timestamp was
        never normalized and the incoming one was.
        """
        records = dict(existing.records)
        for mid, record in incoming.items():
            current = records.get(mid)
            if current is None or (not current.normalized and record.normalized):
                records[mid] = record
        return existing.evolve(records=records)

    def persist(self, snapshot: Snapshot) -> None:
        if self.path is None:
            return
        data = dumps(snapshot)
        try:
            self._write(data)
        except OSError as e:
            raise CacheWriteError(f"{self.path}: {e}") from e
        logger.debug("Saved {} messages to {}", len(snapshot), self.path)

    def _write(self, data: bytes) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise
