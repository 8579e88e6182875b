from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Logging
    debug: bool = False
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Scheduler
    # ------------------------------------------------------------------
    scheduler_tick_seconds: float = 5.0
    scheduler_autostart: bool = True

    # ------------------------------------------------------------------
    # Retry / stall policy
    # ------------------------------------------------------------------
    max_step_retries: int = 3
    retry_backoff_base_minutes: float = 5.0   # doubled on every attempt
    condition_recheck_minutes: float = 60.0
    condition_max_evaluations: int = 72       # 0 = keep rechecking forever

    # ------------------------------------------------------------------
    # Message rendering and record mutation
    # ------------------------------------------------------------------
    link_base_url: str = "https://nexus.app"
    automation_user_id: str = "USR_004"       # author of automated interactions
    default_owner_id: str = "USR_001"
    team_owners: dict[str, str] = {}          # team id -> default owner user id

    # ------------------------------------------------------------------
    # Channel mode
    # ------------------------------------------------------------------
    # "simulator": always use in-memory senders (default, no external calls)
    # "hybrid":    use a real connector per channel when credentials are set,
    #              fall back to the simulator when not
    # "real":      same routing as hybrid; signals intent to use real services
    connector_mode: Literal["simulator", "hybrid", "real"] = "simulator"

    # ------------------------------------------------------------------
    # SendGrid (email)
    # ------------------------------------------------------------------
    sendgrid_api_key: Optional[str] = None
    sendgrid_from_email: Optional[str] = None   # leasing@yourdomain.com

    # ------------------------------------------------------------------
    # Twilio (SMS)
    # ------------------------------------------------------------------
    twilio_account_sid: Optional[str] = None    # AC...
    twilio_auth_token: Optional[str] = None
    twilio_from_number: Optional[str] = None    # +15550001111

    # Optional directory of workflow definition JSON files loaded at startup
    definitions_dir: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
