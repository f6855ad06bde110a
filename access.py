import hmac
import logging
import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Hashable, Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer
from sqlalchemy.orm import Session

from config import Settings
from errors import InvalidCredentialsError, NotFoundError, RateLimitedError
from models import User, UserId
from services import UserService

logger = logging.getLogger(__name__)

SESSION_COOKIE = "budgety-session"


@dataclass
class _Window:
    count: int
    reset_at: float


class LoginRateLimiter:
    """Fixed-window attempt counter per key, bounded in size.

    The first attempt opens a window of ``window_secs``; up to ``max_attempts``
    attempts are allowed inside it. Once the table holds ``capacity`` keys,
    expired windows are dropped first, then the least recently used ones.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 5,
        window_secs: float = 60.0,
        capacity: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.max_attempts = max_attempts
        self.window_secs = window_secs
        self.capacity = capacity
        self._clock = clock
        self._windows: "OrderedDict[Hashable, _Window]" = OrderedDict()
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "LoginRateLimiter":
        return cls(
            max_attempts=settings.login_max_attempts,
            window_secs=settings.login_window_secs,
            capacity=settings.login_table_capacity,
        )

    def __len__(self) -> int:
        return len(self._windows)

    def check(self, key: Hashable) -> bool:
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None or now >= window.reset_at:
                self._windows[key] = _Window(count=1, reset_at=now + self.window_secs)
                self._windows.move_to_end(key)
                self._evict(now)
                return True
            self._windows.move_to_end(key)
            if window.count >= self.max_attempts:
                return False
            window.count += 1
            return True

    def retry_after(self, key: Hashable) -> int:
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None or now >= window.reset_at:
                return 0
            return max(1, math.ceil(window.reset_at - now))

    def _evict(self, now: float) -> None:
        if len(self._windows) <= self.capacity:
            return
        for key in [k for k, w in self._windows.items() if now >= w.reset_at]:
            del self._windows[key]
        while len(self._windows) > self.capacity:
            self._windows.popitem(last=False)


class SessionSigner:
    def __init__(self, secret: str, max_age_secs: int) -> None:
        self.max_age_secs = max_age_secs
        self._serializer = URLSafeTimedSerializer(secret, salt="session")

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionSigner":
        return cls(settings.session_secret, settings.session_max_age_secs)

    def dumps(self, user_id: UserId) -> str:
        return self._serializer.dumps({"u": user_id.value})

    def loads(self, token: Optional[str]) -> Optional[UserId]:
        if not token:
            return None
        try:
            data = self._serializer.loads(token, max_age=self.max_age_secs)
        except BadSignature:
            return None
        if not isinstance(data, dict):
            return None
        try:
            return UserId(data.get("u"))
        except ValueError:
            return None


class AccessGate:
    def __init__(self, session: Session, limiter: LoginRateLimiter, auth_code: str) -> None:
        self.session = session
        self.limiter = limiter
        self.auth_code = auth_code

    def login(self, client_id: str, user_id: str, code: str) -> User:
        key = (client_id, user_id)
        if not self.limiter.check(key):
            retry_after = self.limiter.retry_after(key)
            logger.warning(
                f"login_rate_limited: client={client_id} user={user_id!r} "
                f"retry_after={retry_after}"
            )
            raise RateLimitedError(retry_after=retry_after)

        code_ok = bool(self.auth_code) and hmac.compare_digest(
            code.encode("utf-8"), self.auth_code.encode("utf-8")
        )
        try:
            identity = UserId(user_id)
        except ValueError:
            identity = None
        if not code_ok or identity is None:
            logger.info(f"login_failed: client={client_id} user={user_id!r}")
            raise InvalidCredentialsError()

        try:
            user = UserService(self.session).get(identity)
        except NotFoundError as exc:
            logger.error(f"login_failed: user {identity.value} is not seeded")
            raise InvalidCredentialsError() from exc
        logger.info(f"login_ok: client={client_id} user={identity.value}")
        return user


def current_user(
    session: Session, signer: SessionSigner, token: Optional[str]
) -> Optional[User]:
    user_id = signer.loads(token)
    if user_id is None:
        return None
    try:
        return UserService(session).get(user_id)
    except NotFoundError:
        return None
