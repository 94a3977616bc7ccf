"""
Turn one FETCH answer into a `MessageRecord`.

Every answer is classified:

* `WellFormedEnvelope`: the ENVELOPE decoded cleanly.
* `PermissiveText`: something was off (8-bit bytes in a quoted string, an
  unknown charset, no From, headers parsed by hand after the server's
  reply could not be parsed) and the text was decoded best-effort.
  The record is still usable.
* `Malformed`: no usable record, the id stays missing.
"""
from dataclasses import dataclass
from datetime import datetime, tzinfo
from email.header import Header, decode_header, make_header
from email.parser import BytesParser
from email.utils import parseaddr, parsedate_to_datetime
from typing import Optional, Tuple, Union

from .models import MessageId, MessageRecord
from .timestamps import is_erroneous, normalize

UNKNOWN_SENDER = "(unknown)"
HEADER_FIELDS = ("FROM", "SENDER", "DATE", "SUBJECT", "MESSAGE-ID", "IN-REPLY-TO")
HEADER_FETCH = "BODY.PEEK[HEADER.FIELDS (%s)]" % " ".join(HEADER_FIELDS)


@dataclass(frozen=True)
class WellFormedEnvelope:
    record: MessageRecord


@dataclass(frozen=True)
class PermissiveText:
    record: MessageRecord
    problems: Tuple[str, ...]


@dataclass(frozen=True)
class Malformed:
    id: MessageId
    reason: str


Parsed = Union[WellFormedEnvelope, PermissiveText, Malformed]


class _Decoder:
    "Decodes text, remembering what had to be patched up"

    def __init__(self):
        self.problems = []

    def raw(self, value, what: str) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value
        if isinstance(value, Header):
            # compat32 hands out raw 8-bit header values this way
            self.problems.append(f"8-bit {what}")
            return _scrub(str(value))
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError:
            self.problems.append(f"undecodable {what}")
            return value.decode("utf-8", errors="replace")

    def words(self, value, what: str) -> str:
        "RFC 2047 encoded words"
        text = self.raw(value, what)
        try:
            return _scrub(str(make_header(decode_header(text))))
        except (LookupError, UnicodeError, ValueError):
            self.problems.append(f"bad encoded-word in {what}")
            return text


def _scrub(text: str) -> str:
    "Replace the lone surrogates the email package uses for raw bytes"
    try:
        raw = text.encode("utf-8", errors="surrogateescape")
    except UnicodeEncodeError:
        raw = text.encode("utf-8", errors="replace")
    return raw.decode("utf-8", errors="replace")


def _address(addresses, decoder: _Decoder) -> str:
    for address in addresses or ():
        if address.mailbox is None or address.host is None:
            continue  # group syntax
        mailbox = decoder.raw(address.mailbox, "address")
        host = decoder.raw(address.host, "address")
        return f"{mailbox}@{host}".lower()
    return ""


def _received_at(header_date, internaldate, naive_timezone: tzinfo) -> Optional[datetime]:
    if isinstance(header_date, datetime) and not is_erroneous(header_date):
        return normalize(header_date, naive_timezone)
    if isinstance(internaldate, datetime):
        return normalize(internaldate, naive_timezone)
    return None


def _thread_key(gm_thrid, in_reply_to: str, own_id: str) -> Optional[str]:
    if gm_thrid is not None:
        return str(gm_thrid)
    return in_reply_to or own_id or None


def _result(record: MessageRecord, problems) -> Parsed:
    if problems:
        return PermissiveText(record, tuple(problems))
    return WellFormedEnvelope(record)


def from_envelope(mid: MessageId, data: dict, naive_timezone: tzinfo) -> Parsed:
    "Classify an `ENVELOPE INTERNALDATE` answer, as parsed by imapclient"
    envelope = data.get(b"ENVELOPE")
    if envelope is None:
        return Malformed(mid, "no ENVELOPE in answer")
    decoder = _Decoder()
    received_at = _received_at(envelope.date, data.get(b"INTERNALDATE"), naive_timezone)
    if received_at is None:
        return Malformed(mid, "no usable date")
    sender = _address(envelope.from_, decoder) or _address(envelope.sender, decoder)
    if not sender:
        decoder.problems.append("no sender")
        sender = UNKNOWN_SENDER
    own_id = decoder.raw(envelope.message_id, "message-id").strip()
    record = MessageRecord(
        id=mid,
        sender=sender,
        received_at=received_at,
        subject=decoder.words(envelope.subject, "subject"),
        thread_key=_thread_key(
            data.get(b"X-GM-THRID"),
            decoder.raw(envelope.in_reply_to, "in-reply-to").strip(),
            own_id,
        ),
        message_id=own_id or None,
    )
    return _result(record, decoder.problems)


def header_bytes(data: dict) -> Optional[bytes]:
    for key, value in data.items():
        if isinstance(key, bytes) and key.startswith(b"BODY[HEADER"):
            return value
    return None


def from_headers(mid: MessageId, data: dict, naive_timezone: tzinfo) -> Parsed:
    "Classify a raw header answer, used when the ENVELOPE answer was unusable"
    raw = header_bytes(data)
    if raw is None:
        return Malformed(mid, "no header fields in answer")
    decoder = _Decoder()
    decoder.problems.append("parsed from raw headers")
    headers = BytesParser().parsebytes(raw, headersonly=True)

    header_date = None
    if headers.get("Date"):
        try:
            header_date = parsedate_to_datetime(str(headers["Date"]))
        except (TypeError, ValueError):
            decoder.problems.append("unparsable Date")
    received_at = _received_at(header_date, data.get(b"INTERNALDATE"), naive_timezone)
    if received_at is None:
        return Malformed(mid, "no usable date")

    sender = ""
    for name in ("From", "Sender"):
        _, address = parseaddr(decoder.words(headers.get(name), name.lower()))
        if "@" in address:
            sender = address.lower()
            break
    if not sender:
        decoder.problems.append("no sender")
        sender = UNKNOWN_SENDER
    own_id = decoder.raw(headers.get("Message-ID"), "message-id").strip()
    record = MessageRecord(
        id=mid,
        sender=sender,
        received_at=received_at,
        subject=decoder.words(headers.get("Subject"), "subject"),
        thread_key=_thread_key(
            data.get(b"X-GM-THRID"),
            decoder.raw(headers.get("In-Reply-To"), "in-reply-to").strip(),
            own_id,
        ),
        message_id=own_id or None,
    )
    return _result(record, decoder.problems)
