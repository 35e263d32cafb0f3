# backend/armogrid/api/__init__.py

from armogrid.api import analytics
from armogrid.api import auth
from armogrid.api import meters
from armogrid.api import power_readings
from armogrid.api import webhooks

__all__ = [
    "analytics",
    "auth",
    "meters",
    "power_readings",
    "webhooks",
]
