from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from pydantic import BaseModel

from trendstory.errors import NotFound
from trendstory.storage.models import StoryArtifact
from trendstory.storage.repository import StoryStore
from trendstory.tracker.normalizer import Normalizer
from trendstory.utils.tz_utils import day_key, utc_now


class StoryView(BaseModel):
    id: str
    topic: str
    title: str
    body: str
    score: float
    source: Optional[str] = None
    generator: Optional[str] = None
    generated_at: datetime
    deadline: datetime
    stale: bool
    age_seconds: int
    metadata: Dict[str, Any] = {}

    @classmethod
    def from_artifact(cls, artifact: StoryArtifact, now: datetime) -> "StoryView":
        return cls(
            id=artifact.id,
            topic=artifact.key.normalized,
            title=artifact.title,
            body=artifact.body,
            score=artifact.score,
            source=artifact.source,
            generator=artifact.generator,
            generated_at=artifact.generated_at,
            deadline=artifact.deadline,
            stale=artifact.is_stale(now),
            age_seconds=max(int((now - artifact.generated_at).total_seconds()), 0),
            metadata=artifact.metadata,
        )


class QueryService:
    """Contrato só-leitura sobre o StoryStore, consumido pela camada HTTP."""

    def __init__(self, store: StoryStore, normalizer: Normalizer, clock=utc_now):
        self.store = store
        self.normalizer = normalizer
        self.clock = clock

    def list_stories(self, within_minutes: Optional[int] = None, limit: Optional[int] = None) -> List[StoryView]:
        now = self.clock()
        within = timedelta(minutes=within_minutes) if within_minutes is not None else None
        return [StoryView.from_artifact(a, now) for a in self.store.list(within=within, limit=limit, now=now)]

    def get_story(self, story_id: str) -> StoryView:
        now = self.clock()
        return StoryView.from_artifact(self.store.get(story_id, now=now), now)

    def get_story_by_topic(self, topic: str) -> StoryView:
        key = self.normalizer.key_for(topic)
        if key is None:
            raise NotFound(topic)
        return self.get_story(key.id)

    def latest(self) -> Dict[str, Any]:
        """Stories do dia de geração mais recente (formato do antigo /latest)."""
        now = self.clock()
        stories = self.store.list(now=now)
        if not stories:
            return {"latest_date": None, "records": []}
        latest_day = max(day_key(a.generated_at) for a in stories)
        records = [StoryView.from_artifact(a, now) for a in stories if day_key(a.generated_at) == latest_day]
        return {"latest_date": latest_day, "records": records}
