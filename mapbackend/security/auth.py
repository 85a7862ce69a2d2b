# mapbackend/security/auth.py
from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from functools import lru_cache
from typing import Any, Dict, List, Optional

import bcrypt
import jwt

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
BCRYPT_ROUNDS = 12
# bcrypt ignores input past this many bytes
MAX_PASSWORD_BYTES = 72


class Role(str, Enum):
    NORMAL = "normal"
    EDITOR = "editor"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: Any) -> Optional["Role"]:
        try:
            return cls(value)
        except ValueError:
            return None


@dataclass(frozen=True)
class Identity:
    user_id: str
    username: str
    role: Role


class TokenService:
    """Issues and verifies the signed, time-bounded session credential."""

    def __init__(self, secret: str, expires_hours: int = 24):
        if not secret:
            raise RuntimeError("JWT_SECRET is required to issue or verify credentials")
        self._secret = secret
        self._ttl = timedelta(hours=expires_hours)

    def issue(self, user_id: str, username: str, role: Role | str) -> str:
        now = datetime.now(timezone.utc)
        claims = {
            "userId": str(user_id),
            "username": username,
            "role": Role(role).value,
            "iat": now,
            "exp": now + self._ttl,
        }
        return jwt.encode(claims, self._secret, algorithm=JWT_ALGORITHM)

    def decode(self, token: str) -> Dict[str, Any]:
        return jwt.decode(
            token,
            self._secret,
            algorithms=[JWT_ALGORITHM],
            options={"require": ["exp", "iat"]},
        )

    def verify(self, token: str) -> Optional[Identity]:
        """Return the Identity, or None for malformed/forged/expired credentials."""
        if not token:
            return None
        try:
            claims = self.decode(token)
        except jwt.ExpiredSignatureError:
            logger.info("credential rejected: expired")
            return None
        except jwt.InvalidTokenError as e:
            logger.info("credential rejected: %s", e.__class__.__name__)
            return None

        user_id = claims.get("userId")
        username = claims.get("username")
        role = Role.parse(claims.get("role"))
        if not user_id or not isinstance(username, str) or role is None:
            logger.info("credential rejected: missing or invalid claims")
            return None
        return Identity(user_id=str(user_id), username=username, role=role)


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        token = authorization[len("Bearer "):].strip()
        return token or None
    return None


def hash_password(password: str, rounds: int = BCRYPT_ROUNDS) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds)).decode("ascii")


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # stored value is not a bcrypt hash
        return False


@lru_cache(maxsize=1)
def dummy_password_hash() -> str:
    """A real hash at the stored cost, checked against when there is no user to check."""
    return hash_password(secrets.token_urlsafe(16))


def password_problems(password: str) -> List[str]:
    problems = []
    if len(password) < 8:
        problems.append("at least 8 characters")
    if not re.search(r"[A-Z]", password):
        problems.append("an uppercase letter")
    if not re.search(r"[a-z]", password):
        problems.append("a lowercase letter")
    if not re.search(r"\d", password):
        problems.append("a digit")
    if not re.search(r"[^A-Za-z0-9]", password):
        problems.append("a special character")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        problems.append(f"at most {MAX_PASSWORD_BYTES} bytes")
    return problems
