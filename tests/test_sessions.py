# Tests for session issue / check / sliding renewal.

import pytest

from miniapp_auth.init_data import verify_init_data
from miniapp_auth.models import SessionClaims, SessionUser
from miniapp_auth.session_tokens import SessionCodec, SessionTokenFailure
from miniapp_auth.sessions import SessionManager

from conftest import BOT_TOKEN, SESSION_SECRET, FakeClock, make_init_data

NOW = 1_700_000_000


@pytest.fixture
def clock():
    return FakeClock(NOW)


@pytest.fixture
def manager(clock):
    return SessionManager(SessionCodec(SESSION_SECRET.encode()), ttl_seconds=3600, clock=clock)


@pytest.fixture
def verified():
    user = {"id": 42, "first_name": "Ann"}
    return verify_init_data(make_init_data(user=user, auth_date=NOW), BOT_TOKEN, now=NOW)


class TestLogin:
    def test_login_issues_one_hour_session(self, manager, verified):
        issued = manager.login(verified)

        assert issued.claims == SessionClaims(
            user=SessionUser(id=42, username=None, display_name="Ann"),
            expires_at=NOW + 3600,
        )
        assert manager.current(issued.token) == issued.claims

    def test_end_to_end_claims(self, manager, verified):
        issued = manager.login(verified, now=NOW)
        decoded = manager.codec.verify(issued.token, now=NOW)

        assert decoded.user.id == 42
        assert decoded.user.display_name == "Ann"
        assert decoded.expires_at == NOW + 3600


class TestCheck:
    def test_missing_token_is_anonymous(self, manager):
        check = manager.check(None)
        assert not check.authenticated
        assert check.failure is None
        assert manager.check("").claims is None

    def test_expired_token_is_anonymous(self, manager, verified, clock):
        issued = manager.login(verified)
        clock.advance(3600)

        check = manager.check(issued.token)
        assert not check.authenticated
        assert check.failure is SessionTokenFailure.EXPIRED

    def test_garbage_token_is_anonymous(self, manager):
        check = manager.check("not-a-token")
        assert check.claims is None
        assert check.failure is SessionTokenFailure.MALFORMED


class TestRenewal:
    def test_renewal_extends_expiry(self, manager, verified, clock):
        issued = manager.login(verified)
        clock.advance(1800)

        renewed = manager.renew(issued.token)
        assert renewed is not None
        assert renewed.claims.user == issued.claims.user
        assert renewed.expires_at == NOW + 1800 + 3600
        assert renewed.claims is not issued.claims

    def test_two_renewals_strictly_increase(self, manager, verified, clock):
        token = manager.login(verified).token

        clock.advance(1)
        first = manager.renew(token)
        clock.advance(1)
        second = manager.renew(first.token)

        assert first.expires_at < second.expires_at

    def test_renewals_within_one_second_strictly_increase(self, manager, verified, clock):
        token = manager.login(verified).token

        clock.advance(0.4)
        first = manager.renew(token)
        clock.advance(0.4)
        second = manager.renew(first.token)

        assert NOW + 3600 < first.expires_at < second.expires_at
        assert manager.current(second.token).expires_at == second.expires_at

    def test_renewal_keeps_session_alive_past_original_expiry(self, manager, verified, clock):
        token = manager.login(verified).token
        for _ in range(3):
            clock.advance(3000)
            token = manager.renew(token).token

        assert clock.now > NOW + 3600
        assert manager.current(token) is not None

    def test_renew_anonymous_returns_none(self, manager, verified, clock):
        issued = manager.login(verified)
        clock.advance(7200)
        assert manager.renew(issued.token) is None
        assert manager.renew(None) is None
