import pytest

from .helpers import FakeIMAPClient


@pytest.fixture
def fake_imap():
    """Fresh FakeIMAPClient subclass so class state never leaks between tests."""

    def factory(mailboxes, login_error=None):
        return type(
            "FakeIMAPClientForTest",
            (FakeIMAPClient,),
            {"mailboxes": mailboxes, "login_error": login_error, "instances": []},
        )

    return factory
