"""
Security primitives for the Nutri-Vision backend.

This module implements credential hashing, signed session tokens and the
per-client sliding-window rate limiter applied to the HTTP API.
"""

import time
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from jose import JWTError, jwt
from passlib.context import CryptContext

from .errors import invalid_token
from .models import AccountKind
from .observability import setup_logging
from .settings import settings

# Setup logging
logger = setup_logging()

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=settings.BCRYPT_ROUNDS,
)


def hash_password(password: str) -> str:
    """Salted, deliberately slow one-way hash."""
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def token_lifetime(kind: AccountKind) -> timedelta:
    if kind == AccountKind.PROFESSIONAL:
        return timedelta(minutes=settings.PROFESSIONAL_JWT_EXPIRE_MINUTES)
    return timedelta(minutes=settings.JWT_EXPIRE_MINUTES)


def create_access_token(subject_id: str, kind: AccountKind, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.utcnow() + (expires_delta if expires_delta is not None else token_lifetime(kind))
    to_encode = {"sub": subject_id, "kind": kind.value, "exp": expire}
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> Tuple[str, AccountKind]:
    """Return ``(subject_id, kind)`` or raise ``InvalidToken``."""
    try:
        payload: Dict[str, Any] = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as e:
        logger.warning("Token verification failed", error=str(e))
        raise invalid_token()

    subject_id = payload.get("sub")
    try:
        kind = AccountKind(payload.get("kind"))
    except ValueError:
        raise invalid_token()
    if not subject_id:
        raise invalid_token()
    return subject_id, kind


class RateLimiter:
    """
    Rate limiter for controlling request frequency per client address.

    Implements sliding window rate limiting over an in-process deque per
    identifier. Clients idle for a whole window are forgotten.
    """

    def __init__(self, max_requests: int, window_seconds: int):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.requests: Dict[str, deque] = {}
        self._last_sweep = time.time()

    def is_allowed(self, identifier: str) -> Tuple[bool, Optional[str]]:
        """Check if request is allowed based on rate limits."""
        now = time.time()
        cutoff = now - self.window_seconds

        # At most one full sweep per window
        if now - self._last_sweep >= self.window_seconds:
            self._evict_idle(cutoff)
            self._last_sweep = now

        # Clean old requests outside the window
        request_times = self.requests.setdefault(identifier, deque())
        while request_times and request_times[0] < cutoff:
            request_times.popleft()

        if len(request_times) >= self.max_requests:
            logger.warning(
                "Rate limit exceeded",
                identifier=identifier,
                requests_in_window=len(request_times),
                max_requests=self.max_requests,
            )
            return False, "Too many requests from this client, please try again later"

        request_times.append(now)
        return True, None

    def _evict_idle(self, cutoff: float) -> None:
        idle = [
            identifier for identifier, request_times in self.requests.items()
            if not request_times or request_times[-1] < cutoff
        ]
        for identifier in idle:
            del self.requests[identifier]


# Global rate limiter instance
rate_limiter = RateLimiter(settings.RATE_LIMIT_PER_WINDOW, settings.RATE_LIMIT_WINDOW_SECONDS)
