"""
Domain logic for the Document Gateway.

Generic document operations with cache-aside reads, the order status state
machine, and input validation for dynamically addressed collections.
"""

from .documents import DocumentGateway
from .orders import OrderStatus, OrderStatusService

__all__ = [
    "DocumentGateway",
    "OrderStatus",
    "OrderStatusService",
]
