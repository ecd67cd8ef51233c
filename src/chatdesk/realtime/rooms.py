"""Tenant-namespaced room names."""

from chatdesk.common.exceptions import ValidationError

SEPARATOR = ":"


def room_name(tenant_id: str, room: str) -> str:
    """``{tenantId}:{logicalRoom}``; a client-supplied prefix is never trusted."""
    room = (room or "").strip()
    if not room:
        raise ValidationError("Room name is required")
    if len(room) > 200:
        raise ValidationError("Room name is too long")
    return f"{tenant_id}{SEPARATOR}{room}"


def split_room(full_name: str) -> tuple[str, str]:
    tenant_id, _, room = full_name.partition(SEPARATOR)
    return tenant_id, room
