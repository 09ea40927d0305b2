from enum import Enum


class Role(str, Enum):
    SUPERADMIN = "superadmin"
    ADMIN = "admin"
    MANAGER = "manager"
    AUDITOR = "auditor"

    @property
    def label(self):
        return self.value.capitalize()


ALL_ROLES = tuple(Role)
ROLE_VALUES = frozenset(r.value for r in Role)


def normalize_role(value):
    if isinstance(value, Role):
        return value
    raw = str(value or "").strip().lower()
    for role in Role:
        if role.value == raw:
            return role
    return Role.AUDITOR


def is_admin_like(role):
    return normalize_role(role) in (Role.SUPERADMIN, Role.ADMIN)


def can_run_audits(role):
    return normalize_role(role) in ALL_ROLES


def can_submit_audit(role):
    return normalize_role(role) in (Role.SUPERADMIN, Role.ADMIN, Role.AUDITOR)


def can_manage_areas(role):
    return is_admin_like(role)


def can_manage_setup(role):
    return is_admin_like(role)


def can_manage_users(role):
    return is_admin_like(role)


def can_manage_team(role):
    return normalize_role(role) in (Role.SUPERADMIN, Role.ADMIN, Role.MANAGER)


def can_see_analytics(role):
    return normalize_role(role) in (Role.SUPERADMIN, Role.ADMIN, Role.MANAGER)


def can_delete_audits(role):
    return normalize_role(role) in (Role.SUPERADMIN, Role.ADMIN, Role.MANAGER)


def sees_all_areas(role):
    return is_admin_like(role)


def assignable_roles(role):
    # Admins manage their own hotel and cannot mint superadmins.
    if normalize_role(role) == Role.SUPERADMIN:
        return list(ALL_ROLES)
    if normalize_role(role) == Role.ADMIN:
        return [Role.ADMIN, Role.MANAGER, Role.AUDITOR]
    return []


class AuditContext:
    """Who is asking and for which hotel, resolved once per request."""

    def __init__(self, user, hotel_id):
        self.user = user
        self.role = normalize_role(user["role"]) if user else None
        self.hotel_id = hotel_id

    @property
    def user_id(self):
        return self.user["id"] if self.user else None

    @property
    def is_superadmin(self):
        return self.role == Role.SUPERADMIN

    def allows(self, predicate):
        return self.role is not None and predicate(self.role)

    @classmethod
    def resolve(cls, user, selected_hotel_id=None):
        if not user:
            return cls(None, None)
        if normalize_role(user["role"]) == Role.SUPERADMIN:
            return cls(user, selected_hotel_id)
        return cls(user, user["hotel_id"])
