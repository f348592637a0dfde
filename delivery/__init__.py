"""
Outbound action delivery.
"""

from .base import ActionDelivery, DeliveryResult, LoggingDelivery
from .callback import CallbackDelivery

__all__ = ["ActionDelivery", "DeliveryResult", "LoggingDelivery", "CallbackDelivery"]
