import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional
from pydantic import BaseModel, Field

from trendstory.errors import GenerationFailed
from trendstory.storage.models import StoryArtifact, TrendKey, TrendSignal
from trendstory.utils.tz_utils import utc_now

logger = logging.getLogger(__name__)


class StoryDraft(BaseModel):
    title: str
    body: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class BaseGenerator(ABC):
    """Estratégia de geração: tópico canônico + score -> campos da story."""
    name: str = "base"

    @abstractmethod
    def generate(self, topic: str, score: float, signal: TrendSignal) -> StoryDraft:
        """Levanta GenerationFailed quando o provider não consegue gerar."""


class StorySynthesizer:
    def __init__(self, generator: BaseGenerator, ttl_seconds: int,
                 clock: Callable[[], datetime] = utc_now):
        self.generator = generator
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock

    def synthesize(self, key: TrendKey, signal: TrendSignal,
                   generated_at: Optional[datetime] = None) -> StoryArtifact:
        """`generated_at` é o carimbo do ciclo; sem ele usa o relógio."""
        try:
            draft = self.generator.generate(key.normalized, signal.score, signal)
        except GenerationFailed as e:
            e.key_id = key.id
            raise
        except Exception as e:
            # provider externo pode falhar de qualquer jeito; para o ciclo é sempre GenerationFailed
            logger.exception("Generator %s crashed for '%s'", self.generator.name, key.normalized)
            raise GenerationFailed(f"{type(e).__name__}: {e}", key.id) from e

        if not draft.title.strip() or not draft.body.strip():
            raise GenerationFailed("empty story", key.id)

        generated_at = generated_at or self.clock()
        return StoryArtifact(
            key=key,
            title=draft.title.strip(),
            body=draft.body.strip(),
            generated_at=generated_at,
            score=signal.score,
            deadline=generated_at + self.ttl,
            source=signal.source,
            generator=self.generator.name,
            metadata=draft.metadata,
        )
