import logging
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# KILL_<SUBSYSTEM> variables are read straight from os.environ, so .env has to be loaded there too
load_dotenv()

TRUTHY = {"1", "true", "yes", "on", "y", "t"}
FALSY = {"0", "false", "no", "off", "n", "f"}


def parse_flag(raw, safe_default: bool, default: bool = False, name: str = "flag") -> bool:
    """Interpret an environment flag.

    Empty/missing values resolve to ``default``. Anything that is neither a
    recognised truthy nor falsy word resolves to ``safe_default`` and is logged.
    """
    if raw is None:
        return default
    if isinstance(raw, bool):
        return raw
    value = str(raw).strip().lower()
    if value == "":
        return default
    if value in TRUTHY:
        return True
    if value in FALSY:
        return False
    logger.warning("malformed value %r for %s; using safe default %s", raw, name, safe_default)
    return safe_default


class Settings(BaseSettings):
    # Component enable flags (off => transparent bypass)
    ENABLE_SAFETY_ENFORCEMENT: bool = False
    ENABLE_KILL_SWITCHES: bool = False
    ENABLE_COST_GUARDS: bool = False
    ENABLE_PRODUCTION_CUTOVER: bool = False
    EMERGENCY_STOP_ENABLED: bool = False

    # Kill switches
    KILL_SWITCH_HISTORY_CAPACITY: int = 1000

    # Cost guards
    COST_WARNING_THRESHOLD_PERCENT: float = 80.0
    COST_HARD_CEILING_PERCENT: float = 100.0
    COST_HISTORY_CAPACITY: int = 1000

    # Provider health
    AI_PRIMARY_PROVIDER: str = "anthropic"
    # comma separated, highest priority first
    AI_FAILOVER_ORDER: str = "openai,gemini,deepseek,openrouter"
    PROVIDER_WINDOW_SIZE: int = 20
    PROVIDER_MIN_SAMPLES: int = 10
    PROVIDER_DEGRADED_ERROR_RATE: float = 0.2
    PROVIDER_CRITICAL_ERROR_RATE: float = 0.5
    PROVIDER_ACTION_LOG_CAPACITY: int = 1000
    CONCURRENCY_FULL: int = 10
    CONCURRENCY_REDUCED: int = 5
    CONCURRENCY_MINIMAL: int = 2

    # Readiness / cutover
    CUTOVER_CONFIG_VERSION: str = "1.0.0"
    CUTOVER_MAX_WARNINGS: int = 0
    CUTOVER_CACHE_TTL_SECONDS: float = 60.0
    CUTOVER_CHECK_TIMEOUT_SECONDS: float = 5.0
    CUTOVER_APPROVAL_TTL_SECONDS: int = 3600

    # Enforcement
    ENFORCEMENT_LOG_CAPACITY: int = 1000
    ENFORCEMENT_AUDIT_FILE: Optional[str] = None
    MAX_BULK_CHANGE_ITEMS: int = 1000

    # Admin / ops
    OPS_SAFETY_ADMIN_TOKEN: str = ""
    METRICS_PORT: Optional[int] = None
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("EMERGENCY_STOP_ENABLED", mode="before")
    @classmethod
    def _parse_stop_flag(cls, v):
        return parse_flag(v, safe_default=True, default=False, name="EMERGENCY_STOP_ENABLED")

    @field_validator(
        "ENABLE_SAFETY_ENFORCEMENT",
        "ENABLE_KILL_SWITCHES",
        "ENABLE_COST_GUARDS",
        "ENABLE_PRODUCTION_CUTOVER",
        mode="before",
    )
    @classmethod
    def _parse_enable_flag(cls, v, info):
        # a garbled ENABLE_* keeps enforcement on
        return parse_flag(v, safe_default=True, default=False, name=info.field_name)

    @field_validator("AI_FAILOVER_ORDER", mode="before")
    @classmethod
    def _join_failover_order(cls, v):
        if isinstance(v, (list, tuple)):
            return ",".join(v)
        return v

    @field_validator("AI_PRIMARY_PROVIDER", mode="before")
    @classmethod
    def _lower_primary(cls, v):
        return str(v).strip().lower() if v is not None else v

    @property
    def failover_providers(self) -> List[str]:
        return [p.strip().lower() for p in self.AI_FAILOVER_ORDER.split(",") if p.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
