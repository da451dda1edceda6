"""Moderation package integration helpers exposed to the application."""

from warden.moderation.api import router
from warden.moderation.domain.container import configure, configure_postgres, shutdown

__all__ = ["router", "configure", "configure_postgres", "shutdown"]
