"""Role hierarchy: master > admin > agent > client."""

from enum import Enum


class Role(str, Enum):
    client = "client"
    agent = "agent"
    admin = "admin"
    master = "master"

    @property
    def rank(self) -> int:
        return _RANK[self]


_RANK = {Role.client: 0, Role.agent: 1, Role.admin: 2, Role.master: 3}

STAFF_ROLES = {Role.admin, Role.agent}


def at_least(role: str | Role, minimum: str | Role) -> bool:
    """True when ``role`` sits at or above ``minimum`` in the hierarchy."""
    try:
        return Role(role).rank >= Role(minimum).rank
    except ValueError:
        return False


def is_master(role: str | Role | None) -> bool:
    return role == Role.master or role == Role.master.value
