"""
Unit tests for the IMAP fallback adapter.
IMAPClient is replaced by FakeIMAPClient from tests.helpers.
"""

import base64
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from imapclient.exceptions import LoginError

from mailrelay.adapters.outlook import imap
from mailrelay.adapters.outlook.imap import (
    IllegalSessionState,
    ImapSession,
    SessionState,
    build_xoauth2_string,
    encode_xoauth2_string,
    fetch_latest_per_folder,
    fetch_latest_per_folder_sync,
    fetch_messages_per_folder,
    fetch_messages_per_folder_sync,
    normalize_rfc822,
)

from .helpers import EMAIL, build_raw_message


JAN_5 = datetime(2024, 1, 5, 9, 0, tzinfo=timezone.utc)


class TestXoauth2:

    def test_initial_response_format(self):
        assert build_xoauth2_string("a@b.com", "tok") == "user=a@b.com\x01auth=Bearer tok\x01\x01"

    def test_base64_form(self):
        encoded = encode_xoauth2_string("a@b.com", "tok")

        assert base64.b64decode(encoded) == b"user=a@b.com\x01auth=Bearer tok\x01\x01"


class TestImapSessionStates:

    def test_open_folder_requires_connection(self):
        session = ImapSession(EMAIL, "token")

        with pytest.raises(IllegalSessionState):
            session.open_folder("INBOX")

    def test_connect_authenticates_with_xoauth2(self, fake_imap):
        client_cls = fake_imap({"INBOX": []})

        with patch.object(imap, "IMAPClient", client_cls):
            session = ImapSession(EMAIL, "token", host="imap.test", port=993)
            session.connect()

        client = client_cls.instances[0]
        assert session.state is SessionState.IDLE
        assert client.host == "imap.test"
        assert client.ssl is True
        assert client.normalise_times is False
        assert client.sasl_calls == [("XOAUTH2", build_xoauth2_string(EMAIL, "token"))]

    def test_folder_lifecycle(self, fake_imap):
        client_cls = fake_imap({"INBOX": []})

        with patch.object(imap, "IMAPClient", client_cls):
            session = ImapSession(EMAIL, "token")
            session.connect()
            session.open_folder("INBOX")
            assert session.state is SessionState.FOLDER_OPEN

            with pytest.raises(IllegalSessionState):
                session.open_folder("Junk")

            session.close_folder()
            assert session.state is SessionState.IDLE
            assert client_cls.instances[0].selected == [("INBOX", True)]

    def test_end_is_idempotent(self, fake_imap):
        client_cls = fake_imap({})

        with patch.object(imap, "IMAPClient", client_cls):
            session = ImapSession(EMAIL, "token")
            session.connect()
            session.end()
            session.end()

        assert session.state is SessionState.CLOSED
        assert client_cls.instances[0].logged_out
        with pytest.raises(IllegalSessionState):
            session.connect()

    def test_login_failure_closes_session(self, fake_imap):
        client_cls = fake_imap({}, login_error=LoginError("AUTHENTICATE failed."))

        with patch.object(imap, "IMAPClient", client_cls):
            session = ImapSession(EMAIL, "token")
            with pytest.raises(LoginError):
                session.connect()

        assert session.state is SessionState.CLOSED


class TestNewestMessage:

    def test_picks_latest_internaldate_not_highest_uid(self, fake_imap):
        client_cls = fake_imap({
            "INBOX": [
                (7, JAN_5, build_raw_message("middle")),
                (3, JAN_5 + timedelta(hours=5), build_raw_message("newest")),
                (9, JAN_5 - timedelta(days=1), build_raw_message("oldest")),
            ]
        })

        with patch.object(imap, "IMAPClient", client_cls):
            with ImapSession(EMAIL, "token") as session:
                message = session.visit_folder("inbox")

        assert message.subject == "newest"
        assert message.received_at == JAN_5 + timedelta(hours=5)
        assert message.source_folder == "inbox"

    def test_tie_goes_to_highest_uid(self, fake_imap):
        client_cls = fake_imap({
            "INBOX": [
                (4, JAN_5, build_raw_message("uid four")),
                (5, JAN_5, build_raw_message("uid five")),
            ]
        })

        with patch.object(imap, "IMAPClient", client_cls):
            with ImapSession(EMAIL, "token") as session:
                message = session.visit_folder("inbox")

        assert message.subject == "uid five"

    def test_empty_folder(self, fake_imap):
        client_cls = fake_imap({"Junk": []})

        with patch.object(imap, "IMAPClient", client_cls):
            with ImapSession(EMAIL, "token") as session:
                assert session.visit_folder("junk") is None
                assert session.state is SessionState.IDLE


class TestRecentMessages:

    def test_newest_first_up_to_limit(self, fake_imap):
        client_cls = fake_imap({
            "INBOX": [
                (uid, JAN_5 + timedelta(hours=hours), build_raw_message(f"h{hours}"))
                for uid, hours in [(1, 3), (2, 0), (3, 5), (4, 1)]
            ]
        })

        with patch.object(imap, "IMAPClient", client_cls):
            with ImapSession(EMAIL, "token") as session:
                session.open_folder("INBOX")
                messages = session.recent_messages("inbox", 3)

        assert [m.subject for m in messages] == ["h5", "h3", "h1"]

    def test_limit_above_folder_size(self, fake_imap):
        client_cls = fake_imap({"Sent": [(1, JAN_5, build_raw_message("only"))]})

        with patch.object(imap, "IMAPClient", client_cls):
            with ImapSession(EMAIL, "token") as session:
                messages = session.visit_folder("sent", limit=10)
                assert session.state is SessionState.IDLE

        assert [m.subject for m in messages] == ["only"]

    def test_empty_folder_listing(self, fake_imap):
        client_cls = fake_imap({"Junk": []})

        with patch.object(imap, "IMAPClient", client_cls):
            with ImapSession(EMAIL, "token") as session:
                assert session.visit_folder("junk", limit=5) == []


class TestNormalizeRfc822:

    def test_plain_text_body_is_escaped(self):
        raw = build_raw_message("Plain", text="<b>not bold</b>\nsecond line")

        message = normalize_rfc822(raw, "inbox", JAN_5)

        assert message.body_html == "<p>&lt;b&gt;not bold&lt;/b&gt;<br>second line</p>"
        assert message.preview_text == "<b>not bold</b> second line"
        assert message.sender == "sender@example.com"

    def test_html_alternative_preferred(self):
        raw = build_raw_message("Rich", text="fallback", html="<p><b>bold</b></p>")

        message = normalize_rfc822(raw, "inbox", JAN_5)

        assert "<b>bold</b>" in message.body_html
        assert message.preview_text == "fallback"

    def test_date_header_used_without_internaldate(self):
        raw = build_raw_message("Dated", date="Sat, 06 Jan 2024 10:30:00 +0100")

        message = normalize_rfc822(raw, "junk")

        assert message.received_at == datetime(2024, 1, 6, 9, 30, tzinfo=timezone.utc)


class TestFetchLatestPerFolder:

    def test_visits_folders_in_order_on_one_session(self, fake_imap):
        client_cls = fake_imap({
            "INBOX": [(1, JAN_5, build_raw_message("inbox mail"))],
            "Junk": [(1, JAN_5 + timedelta(days=1), build_raw_message("junk mail"))],
        })

        with patch.object(imap, "IMAPClient", client_cls):
            results = fetch_latest_per_folder_sync(EMAIL, "token", ["inbox", "junk"])

        assert [m.subject for m in results] == ["inbox mail", "junk mail"]
        assert len(client_cls.instances) == 1
        client = client_cls.instances[0]
        assert [path for path, _ in client.selected] == ["INBOX", "Junk"]
        assert client.closed_folders == 2
        assert client.logged_out

    def test_missing_folder_is_skipped(self, fake_imap):
        client_cls = fake_imap({"INBOX": [(1, JAN_5, build_raw_message("inbox mail"))]})

        with patch.object(imap, "IMAPClient", client_cls):
            results = fetch_latest_per_folder_sync(EMAIL, "token", ["inbox", "junk"])

        assert results[0].subject == "inbox mail"
        assert results[1] is None

    def test_login_rejection_propagates(self, fake_imap):
        client_cls = fake_imap({}, login_error=LoginError("AUTHENTICATE failed."))

        with patch.object(imap, "IMAPClient", client_cls):
            with pytest.raises(LoginError):
                fetch_latest_per_folder_sync(EMAIL, "token", ["inbox"])

    @pytest.mark.asyncio
    async def test_async_wrapper(self, fake_imap):
        client_cls = fake_imap({"Sent": [(2, JAN_5, build_raw_message("sent mail"))]})

        with patch.object(imap, "IMAPClient", client_cls):
            results = await fetch_latest_per_folder(EMAIL, "token", ["sent"])

        assert results[0].subject == "sent mail"
        assert results[0].source_folder == "sent"


class TestFetchMessagesPerFolder:

    def test_lists_each_folder(self, fake_imap):
        client_cls = fake_imap({
            "Junk": [
                (1, JAN_5, build_raw_message("first spam")),
                (2, JAN_5 + timedelta(days=1), build_raw_message("second spam")),
            ],
        })

        with patch.object(imap, "IMAPClient", client_cls):
            results = fetch_messages_per_folder_sync(EMAIL, "token", ["junk"], 50)

        assert [[m.subject for m in folder] for folder in results] == [["second spam", "first spam"]]
        assert client_cls.instances[0].logged_out

    def test_missing_folder_lists_nothing(self, fake_imap):
        client_cls = fake_imap({})

        with patch.object(imap, "IMAPClient", client_cls):
            results = fetch_messages_per_folder_sync(EMAIL, "token", ["drafts"], 10)

        assert results == [[]]

    @pytest.mark.asyncio
    async def test_async_wrapper(self, fake_imap):
        client_cls = fake_imap({"INBOX": [(1, JAN_5, build_raw_message("hello"))]})

        with patch.object(imap, "IMAPClient", client_cls):
            results = await fetch_messages_per_folder(EMAIL, "token", ["inbox"], 1)

        assert results[0][0].subject == "hello"
