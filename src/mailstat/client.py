"""
One IMAP session: connect, login, select a folder, search and fetch
envelopes. A session is used once, by one sync, and closed.
"""
import ssl
from contextlib import contextmanager
from datetime import timedelta
from typing import Dict, Iterable, List, Optional, Set

from imapclient import IMAPClient, exceptions
from loguru import logger

from . import envelope
from .config import Security, ServerProfile
from .errors import (
    AuthenticationError,
    MailConnectionError,
    PartialFetchError,
    ProtocolError,
    TlsNegotiationError,
)
from .models import DayRange, MessageId, MessageRecord, message_id, split_message_id
from .timestamps import zone

FETCH_BATCH_SIZE = 100
GMAIL_CAPABILITY = "X-GM-EXT-1"


@contextmanager
def _translated(what: str):
    "imaplib, imapclient and socket errors into ours"
    try:
        yield
    except exceptions.IMAPClientAbortError as e:
        raise MailConnectionError(f"{what}: connection lost: {e}") from e
    except (exceptions.ProtocolError, exceptions.IMAPClientError) as e:
        raise ProtocolError(f"{what}: {e}") from e
    except (OSError, EOFError) as e:
        raise MailConnectionError(f"{what}: {e}") from e


def _tls_context(profile: ServerProfile) -> ssl.SSLContext:
    context = ssl.create_default_context()
    if not profile.verify_tls:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


class MailProtocolClient:
    "Wraps an `IMAPClient`, use it as a context manager"

    def __init__(self, profile: ServerProfile, timeout: Optional[float] = None):
        self.profile = profile
        self.timeout = timeout
        self.naive_timezone = zone(profile.naive_timezone)
        self.uidvalidity: Optional[int] = None
        self.gmail = False
        self._imap: Optional[IMAPClient] = None

    def __enter__(self) -> "MailProtocolClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def connected(self) -> bool:
        return self._imap is not None

    def _require(self) -> IMAPClient:
        if self._imap is None:
            raise MailConnectionError("not connected")
        return self._imap

    def connect(self) -> None:
        profile = self.profile
        logger.debug(
            "Connecting to {}:{} ({})", profile.imap_host, profile.imap_port, profile.security.value
        )
        implicit = profile.security is Security.SSL
        try:
            imap = IMAPClient(
                profile.imap_host,
                port=profile.imap_port,
                use_uid=True,
                ssl=implicit,
                ssl_context=_tls_context(profile) if implicit else None,
                timeout=self.timeout,
            )
        except ssl.SSLError as e:
            raise TlsNegotiationError(f"TLS handshake with {profile.imap_host} failed: {e}") from e
        except (OSError, EOFError, exceptions.IMAPClientError) as e:
            raise MailConnectionError(
                f"cannot connect to {profile.imap_host}:{profile.imap_port}: {e}"
            ) from e
        # Keep the offsets the server sent, normalization happens here
        imap.normalise_times = False
        self._imap = imap
        if profile.security is Security.STARTTLS:
            self._starttls()

    def _starttls(self) -> None:
        imap = self._require()
        try:
            if not imap.has_capability("STARTTLS"):
                raise TlsNegotiationError(
                    f"{self.profile.imap_host} does not advertise STARTTLS"
                )
            imap.starttls(_tls_context(self.profile))
        except TlsNegotiationError:
            self.close()
            raise
        except (ssl.SSLError, exceptions.IMAPClientError) as e:
            self.close()
            raise TlsNegotiationError(f"STARTTLS failed: {e}") from e
        except (OSError, EOFError) as e:
            self.close()
            raise MailConnectionError(f"STARTTLS: {e}") from e

    def authenticate(self, username: str, secret: str) -> None:
        imap = self._require()
        with _translated("login"):
            try:
                imap.login(username, secret)
            except exceptions.LoginError as e:
                raise AuthenticationError(f"login refused for {username}: {e}") from e
        logger.debug("Logged in as {}", username)

    def select(self, folder: str) -> int:
        "Read-only select, returns the folder's UIDVALIDITY"
        imap = self._require()
        with _translated(f"select {folder}"):
            answer = imap.select_folder(folder, readonly=True)
            self.gmail = imap.has_capability(GMAIL_CAPABILITY)
        try:
            self.uidvalidity = int(answer[b"UIDVALIDITY"])
        except (KeyError, TypeError, ValueError):
            raise ProtocolError(f"select {folder}: no UIDVALIDITY in answer") from None
        logger.debug("{} selected, UIDVALIDITY {}", folder, self.uidvalidity)
        return self.uidvalidity

    def list_message_ids(self, day_range: DayRange) -> Set[MessageId]:
        imap = self._require()
        if self.uidvalidity is None:
            raise ProtocolError("no folder selected")
        # SEARCH dates are in the server's zone, up to a day off the UTC day.
        # Ask one day wider on each side, callers filter by UTC day.
        criteria = [
            "SINCE",
            day_range.start - timedelta(days=1),
            "BEFORE",
            day_range.end + timedelta(days=2),
        ]
        with _translated("search"):
            uids = imap.search(criteria)
        logger.debug("search {}: {} messages", day_range, len(uids))
        return {message_id(self.uidvalidity, uid) for uid in uids}

    def _fetch_items(self, header_fallback: bool) -> List[str]:
        items = [envelope.HEADER_FETCH if header_fallback else "ENVELOPE", "INTERNALDATE"]
        if self.gmail:
            items.append("X-GM-THRID")
        return items

    def _fetch_batch(self, uids: List[int]) -> Dict[int, envelope.Parsed]:
        imap = self._require()
        mids = {uid: message_id(self.uidvalidity, uid) for uid in uids}
        try:
            with _translated("fetch"):
                answer = imap.fetch(uids, self._fetch_items(header_fallback=False))
            parse = envelope.from_envelope
        except ProtocolError as e:
            # Some servers put raw 8-bit text in quoted strings, which the
            # ENVELOPE parser rejects. Ask for the headers instead.
            logger.warning("Unparsable ENVELOPE answer ({}), retrying with raw headers", e)
            with _translated("fetch headers"):
                answer = imap.fetch(uids, self._fetch_items(header_fallback=True))
            parse = envelope.from_headers
        parsed = {}
        for uid in uids:
            data = answer.get(uid)
            if data is None:
                parsed[uid] = envelope.Malformed(mids[uid], "no answer")
            else:
                parsed[uid] = parse(mids[uid], data, self.naive_timezone)
        return parsed

    def fetch_metadata(self, ids: Iterable[MessageId]) -> Dict[MessageId, MessageRecord]:
        """
        Records for `ids`. Raises `PartialFetchError` carrying the parsed
        records when some ids got no usable answer.
        """
        if self.uidvalidity is None:
            raise ProtocolError("no folder selected")
        todo = []
        missing = set()
        for mid in ids:
            uidvalidity, uid = split_message_id(mid)
            if uidvalidity != self.uidvalidity:
                missing.add(mid)
            else:
                todo.append(uid)
        todo.sort()
        records = {}
        permissive = 0
        while len(todo):
            batch = todo[:FETCH_BATCH_SIZE]
            todo = todo[FETCH_BATCH_SIZE:]
            try:
                parsed = self._fetch_batch(batch)
            except ProtocolError as e:
                logger.warning("Batch of {} left unfetched: {}", len(batch), e)
                missing.update(message_id(self.uidvalidity, uid) for uid in batch)
                continue
            for result in parsed.values():
                if isinstance(result, envelope.Malformed):
                    logger.debug("{}: {}", result.id, result.reason)
                    missing.add(result.id)
                    continue
                if isinstance(result, envelope.PermissiveText):
                    permissive += 1
                    logger.debug("{}: {}", result.record.id, ", ".join(result.problems))
                records[result.record.id] = result.record
        if permissive:
            logger.info("{} envelope(s) decoded permissively", permissive)
        if missing:
            raise PartialFetchError(missing, records)
        return records

    def close(self) -> None:
        "Logout and drop the socket, never raises"
        imap, self._imap = self._imap, None
        if imap is None:
            return
        try:
            imap.logout()
        except (exceptions.IMAPClientError, OSError, EOFError) as e:
            logger.debug("logout failed: {}", e)
            try:
                imap.shutdown()
            except (exceptions.IMAPClientError, OSError, EOFError):
                pass
