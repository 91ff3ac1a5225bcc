"""mikrops - ISP back-office for MikroTik RouterOS devices.

Customers, PPP profiles and PPPoE secrets are kept in the database and
written through to the router; live traffic, log and ping streams from the
router are multiplexed to any number of WebSocket clients.
"""

__version__ = "0.1.0"

from mikrops.config import Settings, load_settings_from_file

__all__ = [
    "Settings",
    "__version__",
    "load_settings_from_file",
]
