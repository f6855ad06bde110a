import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from access import AccessGate, LoginRateLimiter, SessionSigner, current_user
from database import Base
from errors import InvalidCredentialsError, RateLimitedError
from models import UserId
from services import UserService


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = SessionLocal()
    UserService(session).ensure_seeded("Dor", "Hila")
    return session


def test_limiter_allows_five_attempts_per_window() -> None:
    clock = FakeClock()
    limiter = LoginRateLimiter(max_attempts=5, window_secs=60, clock=clock)
    key = ("10.0.0.1", "owner")

    assert [limiter.check(key) for _ in range(5)] == [True] * 5
    assert limiter.check(key) is False
    assert limiter.check(key) is False
    assert limiter.retry_after(key) == 60

    clock.advance(59)
    assert limiter.check(key) is False
    assert limiter.retry_after(key) == 1

    clock.advance(1)
    assert limiter.check(key) is True
    assert limiter.retry_after(key) == 60


def test_limiter_keys_are_independent() -> None:
    limiter = LoginRateLimiter(max_attempts=1, clock=FakeClock())
    assert limiter.check(("a", "owner")) is True
    assert limiter.check(("a", "owner")) is False
    assert limiter.check(("a", "partner")) is True
    assert limiter.check(("b", "owner")) is True


def test_limiter_stays_bounded() -> None:
    clock = FakeClock()
    limiter = LoginRateLimiter(max_attempts=2, window_secs=60, capacity=3, clock=clock)
    for client in ("a", "b", "c"):
        limiter.check((client, "owner"))
    limiter.check(("a", "owner"))  # "a" is now most recently used

    limiter.check(("d", "owner"))
    assert len(limiter) == 3
    assert limiter.retry_after(("b", "owner")) == 0
    assert limiter.check(("a", "owner")) is False

    clock.advance(61)
    limiter.check(("e", "owner"))
    assert len(limiter) == 1


def test_sixth_attempt_is_rate_limited_even_with_correct_code() -> None:
    session = make_session()
    gate = AccessGate(session, LoginRateLimiter(clock=FakeClock()), "424242")

    for _ in range(5):
        with pytest.raises(InvalidCredentialsError):
            gate.login("10.0.0.7", "partner", "000000")

    with pytest.raises(RateLimitedError) as excinfo:
        gate.login("10.0.0.7", "partner", "424242")
    assert excinfo.value.retry_after == 60

    user = gate.login("10.0.0.8", "partner", "424242")
    assert user.id == UserId.partner


def test_wrong_code_and_unknown_user_fail_identically() -> None:
    session = make_session()
    gate = AccessGate(session, LoginRateLimiter(clock=FakeClock()), "424242")

    with pytest.raises(InvalidCredentialsError) as wrong_code:
        gate.login("c", "owner", "111111")
    with pytest.raises(InvalidCredentialsError) as wrong_user:
        gate.login("c", "admin", "424242")
    assert str(wrong_code.value) == str(wrong_user.value) == "Invalid credentials"

    owner = gate.login("c", "owner", "424242")
    assert owner.is_owner is True
    assert owner.display_name == "Dor"


def test_session_round_trip_and_tampering() -> None:
    session = make_session()
    signer = SessionSigner("test-secret", max_age_secs=3600)

    token = signer.dumps(UserId.partner)
    assert signer.loads(token) == UserId.partner
    assert current_user(session, signer, token).id == UserId.partner

    assert signer.loads("x" + token[1:]) is None
    assert SessionSigner("other-secret", 3600).loads(token) is None
    assert signer.loads(None) is None
    assert current_user(session, signer, "garbage") is None
