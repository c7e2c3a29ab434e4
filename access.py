"""
Role gates.

Each check maps (role, ownership) to allow/deny and knows nothing about
requests, so routes and services share them.
"""

ROLES = ("user", "admin", "super_admin")
ADMIN_ROLES = frozenset({"admin", "super_admin"})


def is_admin(role: str) -> bool:
    return role in ADMIN_ROLES


def is_super_admin(role: str) -> bool:
    return role == "super_admin"


def can_update_order(role: str, owns: bool) -> bool:
    # plain users may touch their own orders only
    return owns or is_admin(role)


def can_refund(role: str) -> bool:
    return is_admin(role)


def can_modify_user(actor_role: str, target_role: str) -> bool:
    if is_super_admin(target_role):
        return is_super_admin(actor_role)
    return is_admin(actor_role)


def can_assign_role(actor_role: str, new_role: str) -> bool:
    if new_role not in ROLES:
        return False
    if is_super_admin(new_role):
        return is_super_admin(actor_role)
    return is_admin(actor_role)


def can_delete_user(actor_role: str, target_role: str) -> bool:
    return is_super_admin(actor_role) and not is_super_admin(target_role)
