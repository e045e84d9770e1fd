import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        session_secret: str,
        session_max_age_secs: int,
        openrouter_api_key: Optional[str],
        openrouter_model: str,
        openrouter_timeout_secs: float,
        openrouter_site_name: str,
        openrouter_site_url: str,
    ) -> None:
        self.database_url = database_url
        self.session_secret = session_secret
        self.session_max_age_secs = session_max_age_secs
        self.openrouter_api_key = openrouter_api_key
        self.openrouter_model = openrouter_model
        self.openrouter_timeout_secs = openrouter_timeout_secs
        self.openrouter_site_name = openrouter_site_name
        self.openrouter_site_url = openrouter_site_url


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budget.db"
    database_url = os.getenv("BUDGET_DATABASE_URL", f"sqlite:///{default_db}")
    session_secret = os.getenv(
        "BUDGET_SESSION_SECRET",
        "3c9d0f5b7e2a41a88f06d2b1c4e7a9f05d8b3e6c1a2f4d7e9b0c3a5f8e1d2c4b",
    )
    session_max_age_secs = int(os.getenv("BUDGET_SESSION_MAX_AGE_SECS", "3600"))
    openrouter_api_key = os.getenv("OPENROUTER_API_KEY") or None
    openrouter_model = os.getenv("OPENROUTER_MODEL", "openai/gpt-4o-mini")
    openrouter_timeout_secs = float(os.getenv("OPENROUTER_TIMEOUT_SECS", "30"))
    openrouter_site_name = os.getenv("OPENROUTER_SITE_NAME", "SimpleBudget")
    openrouter_site_url = os.getenv("OPENROUTER_SITE_URL", "")
    return Settings(
        database_url=database_url,
        session_secret=session_secret,
        session_max_age_secs=session_max_age_secs,
        openrouter_api_key=openrouter_api_key,
        openrouter_model=openrouter_model,
        openrouter_timeout_secs=openrouter_timeout_secs,
        openrouter_site_name=openrouter_site_name,
        openrouter_site_url=openrouter_site_url,
    )
