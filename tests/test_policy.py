"""Unit tests for auth/policy.py -- the Policy Gate.

Covers:
- Ownership: actors may act on their own records only ("not owner")
- Bypasses short-circuit before ordinary policies
- The first failing policy names the denial
- Fail-closed behaviour for unregistered actions and empty rule sets
- ensure() raises Denied with the reason
"""

from datetime import datetime, timedelta, timezone

import pytest

from auth.errors import Denied
from auth.models import ApiKey, Token, User
from auth.policy import SYSTEM, Allow, Deny, Policy, PolicyGate, actor_present, default_gate, system_interaction

U1 = User(id="u1", email="u1@example.com")
U2 = User(id="u2", email="u2@example.com")


def _key_owned_by(user: User) -> ApiKey:
    return ApiKey(
        id=f"key-{user.id}",
        user_id=user.id,
        api_key_hash="0" * 64,
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
    )


@pytest.fixture
def gate() -> PolicyGate:
    return default_gate()


class TestDefaultRules:
    def test_destroy_foreign_key_denied_not_owner(self, gate: PolicyGate) -> None:
        assert gate.authorize(U1, "destroy", _key_owned_by(U2)) == Deny("not owner")

    def test_destroy_own_key_allowed(self, gate: PolicyGate) -> None:
        assert gate.authorize(U1, "destroy", _key_owned_by(U1)) == Allow()

    def test_unauthenticated_actor_denied(self, gate: PolicyGate) -> None:
        decision = gate.authorize(None, "read", _key_owned_by(U1))
        assert isinstance(decision, Deny)
        assert decision.reason == "unauthenticated"

    def test_system_bypasses_ownership(self, gate: PolicyGate) -> None:
        assert gate.authorize(SYSTEM, "destroy", _key_owned_by(U2))
        assert gate.authorize(SYSTEM, "destroy", U2)

    def test_user_actions_require_self(self, gate: PolicyGate) -> None:
        assert gate.authorize(U1, "issue_api_key", U1)
        assert gate.authorize(U1, "issue_api_key", U2) == Deny("not owner")
        assert gate.authorize(U1, "destroy", U2) == Deny("not owner")

    def test_token_destroy_requires_owner(self, gate: PolicyGate) -> None:
        token = Token(jti="t", user_id="u2", purpose="user", expires_at=datetime.now(timezone.utc))
        assert gate.authorize(U1, "destroy", token) == Deny("not owner")
        assert gate.authorize(U2, "destroy", token)

    def test_unregistered_action_fails_closed(self, gate: PolicyGate) -> None:
        decision = gate.authorize(U1, "update", _key_owned_by(U1))
        assert isinstance(decision, Deny)
        assert "no policy" in decision.reason

    def test_ensure_raises_denied_with_reason(self, gate: PolicyGate) -> None:
        with pytest.raises(Denied) as excinfo:
            gate.ensure(U1, "destroy", _key_owned_by(U2))
        assert excinfo.value.reason == "not owner"
        gate.ensure(U1, "destroy", _key_owned_by(U1))


class TestEvaluationOrder:
    def test_bypass_short_circuits_policies(self) -> None:
        seen = []

        def never(actor, resource) -> bool:
            seen.append("policy")
            return False

        gate = PolicyGate()
        gate.register(ApiKey, "read", bypasses=[system_interaction], policies=[Policy("never", never)])

        assert gate.authorize(SYSTEM, "read", _key_owned_by(U1)) == Allow()
        assert seen == []

    def test_first_failing_policy_names_denial(self) -> None:
        gate = PolicyGate()
        gate.register(
            ApiKey,
            "read",
            policies=[
                actor_present,
                Policy("first", lambda actor, resource: False),
                Policy("second", lambda actor, resource: False),
            ],
        )
        assert gate.authorize(U1, "read", _key_owned_by(U1)) == Deny("first")

    def test_all_policies_must_pass(self) -> None:
        gate = PolicyGate()
        gate.register(
            ApiKey,
            "read",
            policies=[Policy("a", lambda actor, resource: True), Policy("b", lambda actor, resource: True)],
        )
        assert gate.authorize(U1, "read", _key_owned_by(U1))

    def test_bypass_only_rule_set_fails_closed_for_others(self) -> None:
        gate = PolicyGate()
        gate.register(ApiKey, "read", bypasses=[system_interaction])
        assert gate.authorize(SYSTEM, "read", _key_owned_by(U1))
        assert isinstance(gate.authorize(U1, "read", _key_owned_by(U1)), Deny)

    def test_resource_type_accepted_for_create_style_checks(self) -> None:
        gate = PolicyGate()
        gate.register(User, "create", policies=[actor_present])
        assert gate.authorize(U1, "create", User)
        assert gate.authorize(None, "create", User) == Deny("unauthenticated")
