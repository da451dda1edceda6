"""Request-scoped dependencies: caller context, staff checks and the internal secret.

Caller identity arrives in headers set by the platform backend, so every route that acts
on that identity also requires the internal secret.
"""

from __future__ import annotations

import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from warden.moderation.domain.container import staff_ids
from warden.moderation.domain.context import RequestContext
from warden.obs.middleware import client_ip
from warden.settings import settings


def verify_internal_secret(x_internal_secret: Optional[str] = Header(default=None, alias="X-Internal-Secret")) -> None:
    expected = settings.internal_ops_token
    if not expected or not x_internal_secret or not secrets.compare_digest(x_internal_secret, expected):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="invalid_internal_secret")


def get_request_context(
    request: Request,
    x_subject_id: Optional[str] = Header(default=None, alias="X-Subject-Id"),
    x_device_id: Optional[str] = Header(default=None, alias="X-Device-Id"),
) -> RequestContext:
    return RequestContext(
        subject_id=(x_subject_id or "").strip() or None,
        ip=client_ip(request),
        device_id=(x_device_id or "").strip() or None,
    )


def require_subject(ctx: RequestContext = Depends(get_request_context)) -> RequestContext:
    if not ctx.subject_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="subject_required")
    return ctx


def require_staff(
    _: None = Depends(verify_internal_secret),
    ctx: RequestContext = Depends(require_subject),
) -> RequestContext:
    if ctx.subject_id not in staff_ids():
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="staff_only")
    return ctx
