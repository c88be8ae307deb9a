import hashlib
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


class TrendSignal(BaseModel):
    """Observação bruta de um provider. Descartada depois da normalização."""
    source: str
    topic: str
    score: float = 0.0
    observed_at: datetime
    extra: Dict[str, Any] = Field(default_factory=dict)


class TrendKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str          # hash estável do texto normalizado
    normalized: str

    @classmethod
    def from_normalized(cls, normalized: str) -> "TrendKey":
        # sha1 (e não hash()) para a chave sobreviver a restarts
        digest = hashlib.sha1(normalized.encode("utf-8")).hexdigest()[:16]
        return cls(id=digest, normalized=normalized)


class StoryArtifact(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: TrendKey
    title: str
    body: str
    generated_at: datetime
    score: float
    deadline: datetime   # generated_at + TTL
    source: Optional[str] = None
    generator: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.key.id

    def is_stale(self, now: datetime) -> bool:
        return now > self.deadline

    def is_expired(self, now: datetime, grace: timedelta) -> bool:
        return now > self.deadline + grace


class CycleOutcome(str, Enum):
    success = "success"
    partial = "partial"
    failed = "failed"


class RefreshCycle(BaseModel):
    cycle_no: int
    started_at: datetime
    finished_at: Optional[datetime] = None
    signals_fetched: int = 0
    signals_dropped: int = 0
    keys_normalized: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    evicted: int = 0
    failed_keys: Dict[str, str] = Field(default_factory=dict)
    source_errors: Dict[str, str] = Field(default_factory=dict)
    outcome: Optional[CycleOutcome] = None
    error: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.outcome in (CycleOutcome.success, CycleOutcome.partial)
