"""Captive-portal gateway helpers: heartbeat, auto-update, task retrieval, restart hand-off and a control client."""

__version__ = "0.1.0"
__all__ = ["gateway", "ping", "retrieve", "update", "util", "wdctl"]