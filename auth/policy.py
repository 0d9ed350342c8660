"""
auth/policy.py -- Policy Gate: per-action authorization before any mutation.

Each (resource type, action) pair owns an ordered rule set:

  bypasses  -- checked first; the first one that holds allows immediately.
  policies  -- checked next, in order; every one must hold. The first that
               fails names the denial reason.

The gate fails closed. An action with no registered rules is denied, and so
is a rule set that has no policies and whose bypasses did not fire.

Per request the actor moves Unauthenticated (actor is None) ->
Authenticated(actor) -> Authorized | Denied. The ``actor_present`` policy
turns the first state into a denial; SYSTEM is the actor used for
authentication interactions (e.g. looking up an API key on behalf of an
anonymous request) and is covered by the ``system_interaction`` bypass.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Union

from auth.errors import Denied
from auth.models import ApiKey, Token, User

logger = logging.getLogger("flowforge.auth.policy")


class SystemActor:
    """The authentication machinery acting on its own behalf."""

    def __repr__(self) -> str:
        return "SYSTEM"


SYSTEM = SystemActor()

Actor = Union[User, SystemActor, None]
Check = Callable[[Actor, Any], bool]


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Allow:
    allowed: bool = field(default=True, init=False)

    def __bool__(self) -> bool:
        return True


@dataclass(frozen=True)
class Deny:
    reason: str
    allowed: bool = field(default=False, init=False)

    def __bool__(self) -> bool:
        return False


Decision = Union[Allow, Deny]


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Policy:
    """A named predicate. reason is reported when the predicate fails."""

    reason: str
    check: Check


@dataclass(frozen=True)
class ActionRules:
    bypasses: tuple[Policy, ...] = ()
    policies: tuple[Policy, ...] = ()


def _system_interaction(actor: Actor, resource: Any) -> bool:
    return actor is SYSTEM


def _actor_present(actor: Actor, resource: Any) -> bool:
    return actor is not None


def _actor_owns_record(actor: Actor, resource: Any) -> bool:
    return isinstance(actor, User) and actor.id is not None and getattr(resource, "user_id", None) == actor.id


def _actor_is_record(actor: Actor, resource: Any) -> bool:
    return isinstance(actor, User) and isinstance(resource, User) and actor.id is not None and actor.id == resource.id


system_interaction = Policy("system interaction", _system_interaction)
actor_present = Policy("unauthenticated", _actor_present)
actor_owns_record = Policy("not owner", _actor_owns_record)
actor_is_record = Policy("not owner", _actor_is_record)


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


class PolicyGate:
    """Registry of rule sets plus the evaluator.

    Usage:
        gate = default_gate()
        decision = gate.authorize(current_user, "destroy", api_key)
        if not decision:
            ...  # decision.reason
        gate.ensure(current_user, "destroy", api_key)  # raises Denied
    """

    def __init__(self) -> None:
        self._rules: dict[tuple[type, str], ActionRules] = {}

    def register(
        self,
        resource_type: type,
        action: str,
        *,
        bypasses: Iterable[Policy] = (),
        policies: Iterable[Policy] = (),
    ) -> None:
        """Declare the rule set for one action. Re-registering replaces it."""
        self._rules[(resource_type, action)] = ActionRules(tuple(bypasses), tuple(policies))

    def rules_for(self, resource_type: type, action: str) -> ActionRules | None:
        return self._rules.get((resource_type, action))

    def authorize(self, actor: Actor, action: str, resource: Any) -> Decision:
        """Evaluate the rule set of (type(resource), action) for actor."""
        resource_type = resource if isinstance(resource, type) else type(resource)
        rules = self.rules_for(resource_type, action)
        if rules is None:
            return self._deny(actor, action, resource_type, f"no policy for {resource_type.__name__}.{action}")

        for bypass in rules.bypasses:
            if bypass.check(actor, resource):
                return Allow()

        if not rules.policies:
            return self._deny(actor, action, resource_type, "no policy authorizes this action")

        for policy in rules.policies:
            if not policy.check(actor, resource):
                return self._deny(actor, action, resource_type, policy.reason)
        return Allow()

    def ensure(self, actor: Actor, action: str, resource: Any) -> None:
        """Like authorize() but raises Denied(reason) instead of returning Deny."""
        decision = self.authorize(actor, action, resource)
        if isinstance(decision, Deny):
            raise Denied(decision.reason)

    @staticmethod
    def _deny(actor: Actor, action: str, resource_type: type, reason: str) -> Deny:
        actor_label = actor.id if isinstance(actor, User) else repr(actor)
        logger.debug("Denied %s on %s for %s: %s", action, resource_type.__name__, actor_label, reason)
        return Deny(reason)


def default_gate() -> PolicyGate:
    """The rule sets used by the HTTP API.

    Users may act on themselves and on the keys and tokens they own. SYSTEM
    may do anything.
    """
    gate = PolicyGate()
    owner_policies = (actor_present, actor_owns_record)
    self_policies = (actor_present, actor_is_record)

    for action in ("read", "destroy"):
        gate.register(ApiKey, action, bypasses=[system_interaction], policies=owner_policies)
    gate.register(Token, "destroy", bypasses=[system_interaction], policies=owner_policies)
    for action in ("read", "destroy", "issue_api_key", "sign_out_everywhere"):
        gate.register(User, action, bypasses=[system_interaction], policies=self_policies)
    return gate
