"""Observability helpers: structured logging, metrics and request middleware."""

from __future__ import annotations

from warden.obs import logging as obs_logging
from warden.obs import middleware


def init(app) -> None:
	obs_logging.configure_logging()
	middleware.install(app)


__all__ = ["init"]
