"""
Unit tests for the credit router.

Tests identity routing, fallback between stores and fail-closed gating.
"""

from unittest.mock import Mock

import pytest

from prompt_racer.core.credits import (
    CreditRouter,
    GateDecision,
    Identity,
    LedgerUnavailable,
    validate_grant_amount,
)


def _ledger(name, remaining=3):
    ledger = Mock()
    ledger.name = name
    ledger.peek.return_value = remaining
    ledger.check_and_decrement.return_value = GateDecision(True, remaining - 1, name)
    ledger.grant.return_value = remaining + 10
    return ledger


def _down(name):
    ledger = Mock()
    ledger.name = name
    error = LedgerUnavailable(name, "connection refused")
    ledger.peek.side_effect = error
    ledger.check_and_decrement.side_effect = error
    ledger.grant.side_effect = error
    return ledger


class TestIdentity:
    """Test identity construction."""

    def test_requires_some_identifier(self):
        """An identity with neither field is rejected."""
        with pytest.raises(ValueError, match="anonymous_token or an account_id"):
            Identity()
        with pytest.raises(ValueError):
            Identity(anonymous_token="", account_id="")

    def test_account_flag(self):
        """is_account reflects the account id."""
        assert Identity(account_id="u1").is_account
        assert not Identity(anonymous_token="t1").is_account


class TestGrantValidation:
    """Test grant amount checks."""

    @pytest.mark.parametrize("amount", [0, -1, 1.5, True, "5"])
    def test_rejects_bad_amounts(self, amount):
        with pytest.raises(ValueError, match="positive integer"):
            validate_grant_amount(amount)

    def test_accepts_positive_int(self):
        validate_grant_amount(1)


class TestCreditRouter:
    """Test store selection and fallback."""

    def test_account_identity_uses_account_ledger(self):
        """Account identities go to the account store."""
        account, cookie = _ledger("account"), _ledger("cookie")
        router = CreditRouter(account, cookie)
        identity = Identity(account_id="u1", anonymous_token="t1")

        decision = router.check_and_decrement(identity)

        assert decision.ledger == "account"
        cookie.check_and_decrement.assert_not_called()

    def test_anonymous_identity_uses_cookie_ledger(self):
        """Anonymous identities go to the cookie store."""
        account, cookie = _ledger("account"), _ledger("cookie")
        router = CreditRouter(account, cookie)

        assert router.peek(Identity(anonymous_token="t1")) == 3
        account.peek.assert_not_called()

    def test_falls_back_when_account_store_down(self):
        """Primary outage falls back to the cookie store for that call."""
        account, cookie = _down("account"), _ledger("cookie")
        router = CreditRouter(account, cookie)
        identity = Identity(account_id="u1", anonymous_token="t1")

        decision = router.check_and_decrement(identity)

        assert decision.allowed
        assert decision.ledger == "cookie"
        assert router.peek(identity) == 3
        assert router.grant(identity, 10) == 13

    def test_fails_closed_without_fallback_token(self):
        """An account-only identity with the account store down is denied."""
        router = CreditRouter(_down("account"), _ledger("cookie"))

        decision = router.check_and_decrement(Identity(account_id="u1"))

        assert not decision.allowed
        assert decision.remaining == 0

    def test_fails_closed_when_both_down(self):
        """Both stores down denies instead of racing unmetered."""
        router = CreditRouter(_down("account"), _down("cookie"))
        identity = Identity(account_id="u1", anonymous_token="t1")

        decision = router.check_and_decrement(identity)

        assert not decision.allowed
        assert decision.ledger == "cookie"

    def test_anonymous_store_down_denies(self):
        """Anonymous identities have no fallback."""
        account, cookie = _ledger("account"), _down("cookie")
        router = CreditRouter(account, cookie)

        decision = router.check_and_decrement(Identity(anonymous_token="t1"))

        assert not decision.allowed
        account.check_and_decrement.assert_not_called()

    def test_peek_and_grant_raise_when_no_store(self):
        """Reads and grants surface the outage when nothing can answer."""
        router = CreditRouter(_down("account"), _down("cookie"))
        identity = Identity(account_id="u1", anonymous_token="t1")

        with pytest.raises(LedgerUnavailable):
            router.peek(identity)
        with pytest.raises(LedgerUnavailable):
            router.grant(identity, 5)

    def test_grant_validates_before_routing(self):
        """Invalid grants never reach a store."""
        account, cookie = _ledger("account"), _ledger("cookie")
        router = CreditRouter(account, cookie)

        with pytest.raises(ValueError):
            router.grant(Identity(account_id="u1"), 0)
        account.grant.assert_not_called()
