"""Chatdesk: multi-tenant customer-support chat platform."""

from chatdesk.client.errors import map_error_to_action
from chatdesk.client.http import ChatdeskClient
from chatdesk.client.realtime import RealtimeClient
from chatdesk.client.refresh import RefreshCoordinator

__all__ = [
    "ChatdeskClient",
    "RealtimeClient",
    "RefreshCoordinator",
    "map_error_to_action",
]
__version__ = "0.1.0"
