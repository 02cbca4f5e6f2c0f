"""
Unit tests for signoff/services/scoping.py

The Python predicate is checked directly; the SQL form is checked for the
filters it renders. Integration tests cover the two agreeing on real rows.
"""

import uuid
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from signoff.domain.actor import Actor
from signoff.domain.enums import Lifecycle, Role
from signoff.exceptions import NotFoundError
from signoff.models.approval import Approval
from signoff.services.scoping import ensure_visible, is_visible, scope_query

ORG = uuid.uuid4()
BRANCH = uuid.uuid4()


def _actor(role=Role.USER, branch=BRANCH, org=ORG) -> Actor:
    return Actor(user_id=uuid.uuid4(), organisation_id=org, role=role, branch_id=branch)


def _approval(**overrides):
    values = dict(
        organisation_id=ORG,
        branch_id=BRANCH,
        lifecycle=Lifecycle.ACTIVE,
        requester_id=uuid.uuid4(),
        approver_id=uuid.uuid4(),
        delegated_to_id=None,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def test_other_organisation_never_visible():
    approval = _approval()
    assert not is_visible(approval, _actor(Role.OWNER, branch=None, org=uuid.uuid4()))


def test_elevated_sees_whole_organisation():
    approval = _approval(branch_id=uuid.uuid4())
    assert is_visible(approval, _actor(Role.ADMIN, branch=None))


def test_party_in_same_branch_sees_it():
    actor = _actor()
    assert is_visible(_approval(requester_id=actor.user_id), actor)
    assert is_visible(_approval(approver_id=actor.user_id), actor)
    assert is_visible(_approval(delegated_to_id=actor.user_id), actor)


def test_non_party_cannot_see_it():
    assert not is_visible(_approval(), _actor(Role.MANAGER))


def test_party_in_other_branch_cannot_see_it():
    actor = _actor(branch=uuid.uuid4())
    assert not is_visible(_approval(approver_id=actor.user_id), actor)


def test_deleted_hidden_unless_requested():
    actor = _actor(Role.OWNER, branch=None)
    approval = _approval(lifecycle=Lifecycle.DELETED)

    assert not is_visible(approval, actor)
    assert is_visible(approval, actor, include_deleted=True)


def test_ensure_visible_raises_not_found():
    with pytest.raises(NotFoundError):
        ensure_visible(None, _actor())
    with pytest.raises(NotFoundError):
        ensure_visible(_approval(), _actor())


def _where(stmt) -> str:
    return str(stmt.compile()).split("WHERE", 1)[1]


def test_scope_query_filters_for_plain_user():
    actor = _actor()
    sql = _where(scope_query(select(Approval), actor))

    assert "approvals.organisation_id" in sql
    assert "approvals.lifecycle !=" in sql
    assert "approvals.branch_id" in sql
    assert "approvals.requester_id" in sql
    assert "approvals.delegated_to_id" in sql


def test_scope_query_for_elevated_actor_only_filters_organisation():
    actor = _actor(Role.OWNER, branch=None)
    sql = _where(scope_query(select(Approval), actor, include_deleted=True))

    assert "approvals.organisation_id" in sql
    assert "approvals.lifecycle" not in sql
    assert "approvals.requester_id" not in sql
