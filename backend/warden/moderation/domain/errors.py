"""Domain-specific exceptions for the abuse-mitigation core."""

from __future__ import annotations


class ModerationError(Exception):
    """Base class carrying an HTTP status code and a machine-readable detail."""

    status_code: int = 400
    detail: str = "moderation_error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.detail)
        if detail:
            self.detail = detail


class ValidationError(ModerationError):
    status_code = 422
    detail = "validation_error"


class NotFoundError(ModerationError):
    status_code = 404
    detail = "not_found"


class InvalidTransition(ModerationError):
    status_code = 409
    detail = "invalid_transition"


class TransientStoreError(ModerationError):
    """Backing store (Redis or Postgres) could not serve the request."""

    status_code = 503
    detail = "store_unavailable"
