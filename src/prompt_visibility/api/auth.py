"""Caller authentication: cron secret for schedulers, bearer tokens scoped to one org."""

from __future__ import annotations

import hmac
from dataclasses import dataclass

from fastapi import Header, HTTPException, Request

from prompt_visibility.config import ApiSettings


@dataclass(frozen=True, slots=True)
class Caller:
    """Authenticated principal; ``org_id`` is None for full-access callers."""

    org_id: str | None

    @property
    def is_admin(self) -> bool:
        return self.org_id is None

    def can_access(self, org_id: str) -> bool:
        return self.is_admin or self.org_id == org_id


def _strip(token: str | None) -> str | None:
    if not token:
        return None
    token = token.strip()
    if token.lower().startswith("bearer "):
        return token[7:].strip()
    return token or None


def resolve_caller(
    settings: ApiSettings,
    *,
    authorization: str | None,
    cron_secret: str | None,
) -> Caller | None:
    if settings.cron_secret and cron_secret and _equal(cron_secret, settings.cron_secret):
        return Caller(org_id=None)
    token = _strip(authorization)
    if token is None:
        return None
    for known, org_id in settings.org_tokens.items():
        if _equal(token, known):
            return Caller(org_id=org_id)
    return None


def require_caller(
    request: Request,
    authorization: str | None = Header(default=None),
    x_cron_secret: str | None = Header(default=None),
) -> Caller:
    caller = resolve_caller(
        request.app.state.settings.api,
        authorization=authorization,
        cron_secret=x_cron_secret,
    )
    if caller is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return caller


def require_admin(caller: Caller) -> None:
    if not caller.is_admin:
        raise HTTPException(status_code=403, detail="Cron secret required")


def require_org_access(caller: Caller, org_id: str) -> None:
    if not caller.can_access(org_id):
        raise HTTPException(status_code=403, detail="Forbidden for this organization")


def _equal(left: str, right: str) -> bool:
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))
