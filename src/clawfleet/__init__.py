"""clawfleet - per-user agent runtime provisioning and config sync."""

__version__ = "0.1.0"
