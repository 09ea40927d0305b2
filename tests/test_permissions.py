import pytest

from permissions import (
    AuditContext,
    Role,
    assignable_roles,
    can_delete_audits,
    can_manage_areas,
    can_manage_setup,
    can_manage_team,
    can_manage_users,
    can_run_audits,
    can_see_analytics,
    can_submit_audit,
    is_admin_like,
    normalize_role,
    sees_all_areas,
)

S, A, M, U = Role.SUPERADMIN, Role.ADMIN, Role.MANAGER, Role.AUDITOR


@pytest.mark.parametrize(
    "predicate, allowed",
    [
        (can_run_audits, {S, A, M, U}),
        (can_submit_audit, {S, A, U}),
        (can_manage_areas, {S, A}),
        (can_manage_setup, {S, A}),
        (can_manage_users, {S, A}),
        (can_manage_team, {S, A, M}),
        (can_see_analytics, {S, A, M}),
        (can_delete_audits, {S, A, M}),
        (is_admin_like, {S, A}),
        (sees_all_areas, {S, A}),
    ],
)
def test_role_predicates(predicate, allowed):
    for role in Role:
        assert predicate(role) is (role in allowed), (predicate.__name__, role)


@pytest.mark.parametrize(
    "raw, role",
    [("admin", A), (" Manager ", M), ("SUPERADMIN", S), ("", U), (None, U), ("owner", U), (A, A)],
)
def test_normalize_role(raw, role):
    assert normalize_role(raw) is role


def test_predicates_accept_raw_strings():
    assert can_manage_setup("admin")
    assert not can_submit_audit("manager")


def test_assignable_roles():
    assert assignable_roles(S) == [S, A, M, U]
    assert S not in assignable_roles(A)
    assert assignable_roles(M) == []


def test_context_pins_non_superadmin_to_profile_hotel():
    user = {"id": 4, "role": "admin", "hotel_id": 7}
    ctx = AuditContext.resolve(user, selected_hotel_id=99)
    assert ctx.hotel_id == 7
    assert ctx.user_id == 4
    assert not ctx.is_superadmin
    assert ctx.allows(can_manage_users)


def test_context_superadmin_uses_selected_hotel():
    user = {"id": 1, "role": "superadmin", "hotel_id": None}
    assert AuditContext.resolve(user).hotel_id is None
    ctx = AuditContext.resolve(user, selected_hotel_id=3)
    assert ctx.hotel_id == 3
    assert ctx.is_superadmin


def test_anonymous_context_allows_nothing():
    ctx = AuditContext.resolve(None, selected_hotel_id=3)
    assert ctx.user is None and ctx.hotel_id is None
    assert not ctx.allows(can_run_audits)
