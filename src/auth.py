"""Authorization boundary.

Credential issuance (JWT, API keys) lives outside this package; here a
credential is only turned into an allow/deny decision plus an identity,
before any action is attributed to an owner.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass, field
from typing import Protocol

from .config import get_validated_config
from .config_schema import AuthConfig
from .errors import AuthorizationError, ErrorCode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    """An authenticated principal (an owner of devices and credits)."""

    owner_id: str
    scopes: frozenset[str] = field(default_factory=frozenset)


class Authorizer(Protocol):
    def authorize(self, credential: str) -> Identity:
        """Return the identity behind ``credential``.

        Raises:
            AuthorizationError: credential denied
        """
        ...


class ApiKeyAuthorizer:
    """Static API-key table from config (``auth.api_keys``)."""

    def __init__(self, auth_config: AuthConfig | None = None) -> None:
        cfg = auth_config or get_validated_config().auth
        self._keys: dict[str, str] = dict(cfg.api_keys)

    def authorize(self, credential: str) -> Identity:
        if credential:
            for key, owner_id in self._keys.items():
                if hmac.compare_digest(key, credential):
                    return Identity(owner_id=owner_id)
        logger.warning("Rejected credential")
        raise AuthorizationError("invalid credential")


def require_owner(identity: Identity, owner_id: str) -> None:
    """Raise unless ``identity`` owns the resource."""
    if identity.owner_id != owner_id:
        raise AuthorizationError(
            f"{identity.owner_id} does not own this resource",
            code=ErrorCode.NOT_OWNER,
            ownerId=owner_id,
        )
