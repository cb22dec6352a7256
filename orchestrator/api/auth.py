"""
API key scopes for the fleet API.

Two kinds of caller hold keys:

    competition   show-runner services assigning and releasing VMs (FLEET_API_KEY)
    admin         operators managing the pool (FLEET_ADMIN_API_KEY)

The admin key is accepted on every route. Without an admin key, FLEET_API_KEY
also opens the admin routes; with neither key set the API is open.

Each scope is rate limited per client IP with its own budget, before the key
is checked.
"""

from __future__ import annotations

import secrets
from enum import Enum

import structlog
from fastapi import HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from orchestrator.api.rate_limit import limiter
from orchestrator.services.config import Settings, get_settings

logger = structlog.get_logger()

_bearer = HTTPBearer(auto_error=False)


class Scope(str, Enum):
    COMPETITION = "competition"
    ADMIN = "admin"


def accepted_keys(scope: Scope, settings: Settings) -> dict[str, str]:
    """Keys that open ``scope``, mapped to the caller they identify."""
    keys: dict[str, str] = {}
    if settings.admin_api_key:
        keys[settings.admin_api_key] = Scope.ADMIN.value
    if settings.api_key and (scope == Scope.COMPETITION or not settings.admin_api_key):
        keys.setdefault(settings.api_key, Scope.COMPETITION.value)
    return keys


def _match(token: str, keys: dict[str, str]) -> str | None:
    matched = None
    # Compare against every key so timing does not reveal which one was close
    for key, caller in keys.items():
        if secrets.compare_digest(token.encode(), key.encode()):
            matched = caller
    return matched


class FleetAccess:
    """Route dependency: rate limit, then authenticate for ``scope``.

    Returns the caller kind ("admin", "competition" or "anonymous").
    """

    def __init__(self, scope: Scope):
        self.scope = scope

    async def __call__(
        self,
        request: Request,
        credentials: HTTPAuthorizationCredentials | None = Security(_bearer),
    ) -> str:
        client_ip = request.client.host if request.client else "unknown"
        limiter.check(f"{self.scope.value}:{client_ip}")

        settings = get_settings()
        keys = accepted_keys(self.scope, settings)
        if not keys:
            return "anonymous"

        caller = _match(credentials.credentials, keys) if credentials else None
        if caller is not None:
            return caller

        if credentials and _match(credentials.credentials, accepted_keys(Scope.COMPETITION, settings)):
            await logger.awarning("Competition key used on admin route", client=client_ip)
            raise HTTPException(status_code=403, detail="API key does not grant admin access")

        await logger.awarning("Rejected API request", scope=self.scope.value, client=client_ip)
        raise HTTPException(
            status_code=401,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )


admin_access = FleetAccess(Scope.ADMIN)
competition_access = FleetAccess(Scope.COMPETITION)
