"""Configuração do serviço, lida do ambiente (prefixo TREND_STORY_) e do .env."""
import logging
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TREND_STORY_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Servidor HTTP
    host: str = "127.0.0.1"
    port: int = 3003
    log_level: str = "INFO"
    environment: str = "development"

    # Fontes de trends
    feeds: str = "google_trends"          # lista separada por vírgula
    geo: str = "US"
    max_items: int = Field(default=20, ge=1)
    request_timeout_seconds: float = Field(default=10.0, gt=0)

    # Geração de stories
    generator: str = "template"           # "template" ou "transformers"
    generator_model: str = "google/flan-t5-small"
    synthesis_workers: int = Field(default=4, ge=1)

    # Ciclo de refresh (default: 20 min, igual ao sync original)
    refresh_interval_seconds: int = Field(default=1200, gt=0)
    jitter_seconds: int = Field(default=30, ge=0)
    cycle_timeout_seconds: int = Field(default=600, gt=0)
    backoff_base_seconds: int = Field(default=60, gt=0)
    backoff_max_seconds: int = Field(default=1800, gt=0)

    # Validade dos artifacts. None = derivado do intervalo
    ttl_seconds: Optional[int] = Field(default=None, gt=0)
    grace_seconds: Optional[int] = Field(default=None, ge=0)
    max_idle_cycles: int = Field(default=3, ge=1)
    max_signal_age_seconds: Optional[int] = Field(default=None, gt=0)
    near_duplicate_threshold: Optional[float] = Field(default=0.8, ge=0, le=1)

    snapshot_path: Optional[str] = None

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def _check_ttl(self) -> "Settings":
        if self.ttl <= self.refresh_interval_seconds:
            logger.warning(
                "TTL (%ss) does not exceed refresh interval (%ss); a single failed fetch will expire stories",
                self.ttl, self.refresh_interval_seconds,
            )
        return self

    @property
    def feed_names(self) -> List[str]:
        return [f.strip().lower() for f in self.feeds.split(",") if f.strip()]

    @property
    def ttl(self) -> int:
        # 3 intervalos: duas falhas seguidas de fetch não derrubam o cache
        return self.ttl_seconds or 3 * self.refresh_interval_seconds

    @property
    def grace(self) -> int:
        # um intervalo completo além do TTL
        if self.grace_seconds is None:
            return self.refresh_interval_seconds
        return self.grace_seconds

    @property
    def max_signal_age(self) -> int:
        return self.max_signal_age_seconds or self.ttl


@lru_cache()
def get_settings() -> Settings:
    return Settings()
