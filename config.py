import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        auth_code: str,
        session_secret: str,
        session_max_age_secs: int,
        owner_name: str,
        partner_name: str,
        login_window_secs: float,
        login_max_attempts: int,
        login_table_capacity: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.auth_code = auth_code
        self.session_secret = session_secret
        self.session_max_age_secs = session_max_age_secs
        self.owner_name = owner_name
        self.partner_name = partner_name
        self.login_window_secs = login_window_secs
        self.login_max_attempts = login_max_attempts
        self.login_table_capacity = login_table_capacity


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGETY_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budgety.db"
    database_url = os.getenv("BUDGETY_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGETY_TIMEZONE", "Asia/Jerusalem")
    auth_code = os.getenv("BUDGETY_AUTH_CODE", "123456")
    session_secret = os.getenv(
        "BUDGETY_SESSION_SECRET",
        "5d0c1f0e8a6b4f3c9e27d1a4b8c6e2f09a3d7b5c1e4f8a2d6c0b9e3f7a1d5c8b",
    )
    session_max_age_secs = int(os.getenv("BUDGETY_SESSION_MAX_AGE_SECS", "604800"))
    owner_name = os.getenv("BUDGETY_OWNER_NAME", "Owner")
    partner_name = os.getenv("BUDGETY_PARTNER_NAME", "Partner")
    login_window_secs = float(os.getenv("BUDGETY_LOGIN_WINDOW_SECS", "60"))
    login_max_attempts = int(os.getenv("BUDGETY_LOGIN_MAX_ATTEMPTS", "5"))
    login_table_capacity = int(os.getenv("BUDGETY_LOGIN_TABLE_CAPACITY", "10000"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        auth_code=auth_code,
        session_secret=session_secret,
        session_max_age_secs=session_max_age_secs,
        owner_name=owner_name,
        partner_name=partner_name,
        login_window_secs=login_window_secs,
        login_max_attempts=login_max_attempts,
        login_table_capacity=login_table_capacity,
    )
