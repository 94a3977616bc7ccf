from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest
from imapclient import exceptions
from imapclient.response_types import Address, Envelope

from mailstat import client as client_module
from mailstat.client import MailProtocolClient
from mailstat.config import PROFILES, Security
from mailstat.errors import (
    AuthenticationError,
    MailConnectionError,
    PartialFetchError,
    ProtocolError,
    TlsNegotiationError,
)
from mailstat.models import DayRange

UTC = timezone.utc


def envelope_for(uid: int, subject: bytes = b"hi") -> Envelope:
    sender = (Address(name=None, route=None, mailbox=b"user%d" % uid, host=b"example.test"),)
    return Envelope(
        date=datetime(2026, 10, 18, 10, uid % 60, tzinfo=UTC),
        subject=subject,
        from_=sender,
        sender=sender,
        reply_to=sender,
        to=None,
        cc=None,
        bcc=None,
        in_reply_to=None,
        message_id=b"<%d@example.test>" % uid,
    )


class FakeIMAPClient:
    "The parts of imapclient.IMAPClient a session uses"

    instances: list = []
    fail_connect = None
    capabilities = {"IMAP4REV1", "STARTTLS"}

    def __init__(self, host, port=None, use_uid=True, ssl=True, ssl_context=None, timeout=None):
        if FakeIMAPClient.fail_connect is not None:
            raise FakeIMAPClient.fail_connect
        self.host = host
        self.port = port
        self.ssl = ssl
        self.timeout = timeout
        self.normalise_times = True
        self.started_tls = False
        self.login_error = None
        self.searches = []
        self.fetches = []
        self.uids = {}
        self.broken_envelopes = False
        self.logged_out = False
        FakeIMAPClient.instances.append(self)

    def has_capability(self, name):
        return name in self.capabilities

    def starttls(self, ssl_context=None):
        self.started_tls = True

    def login(self, username, password):
        if self.login_error is not None:
            raise self.login_error
        return b"LOGIN completed"

    def select_folder(self, folder, readonly=False):
        return {b"UIDVALIDITY": 42, b"EXISTS": len(self.uids)}

    def search(self, criteria):
        self.searches.append(criteria)
        return sorted(self.uids)

    def fetch(self, uids, items):
        self.fetches.append((list(uids), list(items)))
        if "ENVELOPE" in items:
            if self.broken_envelopes:
                raise exceptions.ProtocolError("Unexpected character in quoted string")
            return {uid: {b"ENVELOPE": self.uids[uid], b"SEQ": uid} for uid in uids if uid in self.uids}
        key = ("BODY[HEADER.FIELDS (%s)]" % " ".join(client_module.envelope.HEADER_FIELDS)).encode()
        return {
            uid: {
                key: b"From: user%d@example.test\r\nSubject: Caf\xe9\r\n\r\n" % uid,
                b"INTERNALDATE": datetime(2026, 10, 18, 11, 0, tzinfo=UTC),
            }
            for uid in uids
            if uid in self.uids
        }

    def logout(self):
        self.logged_out = True

    def shutdown(self):
        pass


@pytest.fixture
def fake_imap(monkeypatch):
    FakeIMAPClient.instances = []
    FakeIMAPClient.fail_connect = None
    monkeypatch.setattr(client_module, "IMAPClient", FakeIMAPClient)
    return FakeIMAPClient


def open_session(profile=PROFILES["gmail"]) -> MailProtocolClient:
    session = MailProtocolClient(profile, timeout=5)
    session.connect()
    session.authenticate("me@example.test", "secret")
    session.select("INBOX")
    return session


def test_connect_with_implicit_tls(fake_imap) -> None:
    with MailProtocolClient(PROFILES["gmail"], timeout=5) as session:
        session.connect()
        imap = fake_imap.instances[0]
        assert (imap.host, imap.port, imap.ssl, imap.timeout) == ("imap.gmail.com", 993, True, 5)
        assert imap.normalise_times is False
        assert not imap.started_tls
    assert imap.logged_out
    assert not session.connected


def test_connect_with_starttls(fake_imap) -> None:
    session = MailProtocolClient(PROFILES["bridge"])
    session.connect()

    imap = fake_imap.instances[0]
    assert imap.ssl is False
    assert imap.started_tls


def test_starttls_not_advertised(fake_imap, monkeypatch) -> None:
    monkeypatch.setattr(FakeIMAPClient, "capabilities", {"IMAP4REV1"})
    session = MailProtocolClient(PROFILES["bridge"])

    with pytest.raises(TlsNegotiationError):
        session.connect()
    assert not session.connected
    assert fake_imap.instances[0].logged_out


def test_connect_refused(fake_imap) -> None:
    fake_imap.fail_connect = ConnectionRefusedError(111, "Connection refused")
    session = MailProtocolClient(PROFILES["gmail"])

    with pytest.raises(MailConnectionError):
        session.connect()
    session.close()
    session.close()


def test_login_refused(fake_imap) -> None:
    session = MailProtocolClient(PROFILES["gmail"])
    session.connect()
    fake_imap.instances[0].login_error = exceptions.LoginError("[AUTHENTICATIONFAILED]")

    with pytest.raises(AuthenticationError):
        session.authenticate("me@example.test", "wrong")


def test_login_garbage_is_protocol_error(fake_imap) -> None:
    session = MailProtocolClient(PROFILES["gmail"])
    session.connect()
    fake_imap.instances[0].login_error = exceptions.IMAPClientError("unexpected response")

    with pytest.raises(ProtocolError):
        session.authenticate("me@example.test", "secret")


def test_login_timeout_is_connection_error(fake_imap) -> None:
    session = MailProtocolClient(PROFILES["gmail"])
    session.connect()
    fake_imap.instances[0].login_error = TimeoutError("timed out")

    with pytest.raises(MailConnectionError):
        session.authenticate("me@example.test", "secret")


def test_list_searches_the_day_range(fake_imap) -> None:
    session = open_session()
    imap = fake_imap.instances[0]
    imap.uids = {3: envelope_for(3), 5: envelope_for(5)}

    ids = session.list_message_ids(DayRange(date(2026, 10, 5), date(2026, 10, 19)))

    assert ids == {"42:3", "42:5"}
    assert imap.searches == [["SINCE", date(2026, 10, 4), "BEFORE", date(2026, 10, 21)]]


def test_list_finds_messages_dated_otherwise_by_the_server(fake_imap) -> None:
    session = open_session()
    imap = fake_imap.instances[0]
    # 03:00Z on the 5th is still the 4th for a server at UTC-7
    server_zone = timezone(timedelta(hours=-7))
    arrivals = {
        1: datetime(2026, 10, 5, 3, 0, tzinfo=UTC),
        2: datetime(2026, 10, 19, 23, 0, tzinfo=UTC),
    }
    imap.uids = {uid: envelope_for(uid) for uid in arrivals}

    def search(criteria):
        _, since, _, before = criteria
        return sorted(
            uid
            for uid, received in arrivals.items()
            if since <= received.astimezone(server_zone).date() < before
        )

    imap.search = search

    ids = session.list_message_ids(DayRange(date(2026, 10, 5), date(2026, 10, 19)))

    assert ids == {"42:1", "42:2"}


def test_fetch_metadata(fake_imap) -> None:
    session = open_session()
    imap = fake_imap.instances[0]
    imap.uids = {uid: envelope_for(uid) for uid in range(1, 251)}

    records = session.fetch_metadata({f"42:{uid}" for uid in range(1, 251)})

    assert len(records) == 250
    assert records["42:7"].sender == "user7@example.test"
    assert records["42:7"].received_at == datetime(2026, 10, 18, 10, 7, tzinfo=UTC)
    assert [len(uids) for uids, _ in imap.fetches] == [100, 100, 50]


def test_fetch_reports_missing_ids(fake_imap) -> None:
    session = open_session()
    fake_imap.instances[0].uids = {1: envelope_for(1), 2: envelope_for(2)}

    with pytest.raises(PartialFetchError) as excinfo:
        session.fetch_metadata({"42:1", "42:2", "42:3", "41:1"})

    assert excinfo.value.missing == {"42:3", "41:1"}
    assert set(excinfo.value.records) == {"42:1", "42:2"}


def test_gmail_fetches_thread_ids(fake_imap, monkeypatch) -> None:
    monkeypatch.setattr(FakeIMAPClient, "capabilities", {"IMAP4REV1", "X-GM-EXT-1"})
    session = open_session()
    imap = fake_imap.instances[0]
    imap.uids = {1: envelope_for(1)}

    session.fetch_metadata({"42:1"})

    assert imap.fetches[0][1] == ["ENVELOPE", "INTERNALDATE", "X-GM-THRID"]


def test_unparsable_envelope_falls_back_to_headers(fake_imap) -> None:
    session = open_session(PROFILES["bridge"])
    imap = fake_imap.instances[0]
    imap.uids = {1: envelope_for(1), 2: envelope_for(2)}
    imap.broken_envelopes = True

    records = session.fetch_metadata({"42:1", "42:2"})

    assert set(records) == {"42:1", "42:2"}
    assert records["42:1"].sender == "user1@example.test"
    assert records["42:1"].subject.startswith("Caf")
    assert records["42:1"].received_at == datetime(2026, 10, 18, 11, 0, tzinfo=UTC)
    assert imap.fetches[1][1][0].startswith("BODY.PEEK[HEADER.FIELDS")


def test_fetch_before_select(fake_imap) -> None:
    session = MailProtocolClient(PROFILES["gmail"])
    session.connect()

    with pytest.raises(ProtocolError):
        session.fetch_metadata({"42:1"})


def test_plaintext_profile(fake_imap) -> None:
    from dataclasses import replace

    session = MailProtocolClient(replace(PROFILES["bridge"], security=Security.PLAIN))
    session.connect()

    assert fake_imap.instances[0].ssl is False
    assert not fake_imap.instances[0].started_tls
