"""Warden: rate limiting, content moderation and ban escalation."""

__version__ = "0.1.0"
