"""Bearer-token verification: JWT principals for the HTTP API and MCP tokens."""

from __future__ import annotations

import hashlib
import logging
import secrets
from typing import Any, Dict, List, Optional

import jwt

from .config import Settings, get_settings
from .errors import ForbiddenError, NotFoundError, TokenError
from .models import ROLES, McpToken, Principal, Project, is_uuid, utcnow
from .storage import Repository

logger = logging.getLogger("specforge.auth")

TOKEN_PREFIX = "sf_live_"
TOKEN_BYTES = 32
VISIBLE_PREFIX_LENGTH = 11


class JwtValidator:
    """Verify a signed JWT and turn its claims into a ``Principal``."""

    def __init__(self, secret: str, algorithm: str = "HS256", issuer: str = "", audience: str = ""):
        self.secret = secret
        self.algorithm = algorithm or "HS256"
        self.issuer = issuer
        self.audience = audience

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "JwtValidator":
        settings = settings or get_settings()
        return cls(settings.jwt_secret, settings.jwt_algorithm, settings.jwt_issuer, settings.jwt_audience)

    def validate(self, token: str) -> Principal:
        if not token:
            raise TokenError("invalid or expired token")
        options: Dict[str, Any] = {"verify_aud": bool(self.audience)}
        kwargs: Dict[str, Any] = {"algorithms": [self.algorithm], "options": options}
        if self.issuer:
            kwargs["issuer"] = self.issuer
        if self.audience:
            kwargs["audience"] = self.audience
        try:
            claims = jwt.decode(token, self.secret, **kwargs)
        except jwt.ExpiredSignatureError:
            raise TokenError("token is expired")
        except jwt.PyJWTError as e:
            logger.debug(f"Token rejected: {e}")
            raise TokenError("invalid or expired token")

        sub = claims.get("sub")
        workspace = claims.get("workspace")
        role = claims.get("role")
        if not isinstance(sub, str) or not isinstance(workspace, str) or not isinstance(role, str):
            raise TokenError("invalid or expired token")
        if not is_uuid(sub) or not is_uuid(workspace):
            raise TokenError("invalid UUID format in claims")
        if role not in ROLES:
            raise TokenError("unknown role in claims")
        return Principal(user_id=sub, workspace_id=workspace, role=role)


def bearer_token(header: Optional[str]) -> str:
    """Pull the token out of an ``Authorization: Bearer <token>`` header."""
    if not header:
        return ""
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return value.strip()


def require_role(principal: Principal, *roles: str) -> None:
    if not principal.has_role(*roles):
        raise ForbiddenError(f"role {principal.role} is not allowed to perform this action")


def hash_token(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class McpTokenService:
    """Project-scoped opaque tokens for MCP agents; only the hash is stored."""

    def __init__(self, repository: Repository):
        self.repository = repository

    def create_token(self, project_id: str, name: str = "") -> Dict[str, Any]:
        self.repository.require(Project, project_id)
        raw = TOKEN_PREFIX + secrets.token_hex(TOKEN_BYTES)
        token = self.repository.save(McpToken(
            project_id=project_id,
            name=name,
            token_prefix=raw[:VISIBLE_PREFIX_LENGTH],
            token_hash=hash_token(raw),
        ))
        logger.info(f"MCP token {token.token_prefix}... created for project {project_id}")
        # The raw value is returned exactly once.
        return {**token.public_dict(), "token": raw}

    def validate_token(self, raw: str) -> McpToken:
        if not raw:
            raise TokenError("invalid token")
        token = self.repository.find_mcp_token_by_hash(hash_token(raw))
        if token is None or token.revoked:
            raise TokenError("invalid token")
        token.last_used_at = utcnow()
        self.repository.save(token)
        return token

    def list_tokens(self, project_id: str) -> List[McpToken]:
        return self.repository.list_mcp_tokens(project_id)

    def revoke_token(self, token_id: str) -> McpToken:
        token = self.repository.get(McpToken, token_id)
        if token is None:
            raise NotFoundError("mcp token not found", details=token_id)
        token.revoked = True
        self.repository.save(token)
        logger.info(f"MCP token {token.token_prefix}... revoked")
        return token

    def revoke_all(self, project_id: str) -> int:
        count = 0
        for token in self.list_tokens(project_id):
            if not token.revoked:
                token.revoked = True
                self.repository.save(token)
                count += 1
        return count
