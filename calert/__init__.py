"""Receive Alertmanager webhooks and relay them to Google Chat rooms."""

__version__ = "2.0.0"
__all__ = ["__version__"]