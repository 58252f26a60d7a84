"""
Outbound change notifications over WebSocket.
"""

from .admin_channel import AdminEventChannel, ADMIN_ROOM

__all__ = ["AdminEventChannel", "ADMIN_ROOM"]
