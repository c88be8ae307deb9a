# trendstory/tests/conftest.py
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from trendstory.errors import GenerationFailed
from trendstory.feeds.base import BaseFeed
from trendstory.storage.models import TrendSignal
from trendstory.storage.repository import StoryStore
from trendstory.synthesizer.base import BaseGenerator, StoryDraft, StorySynthesizer
from trendstory.tracker.normalizer import Normalizer
from trendstory.tracker.refresher import StoryRefresher
from trendstory.utils.tz_utils import utc_now

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

LONG_TOPIC = ("champions league final tonight in istanbul as fans gather across the city "
              "streets and squares hours before the kickoff of the biggest match of the season")


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class FakeFeed(BaseFeed):
    def __init__(self, signals: Optional[List[TrendSignal]] = None, error: Optional[Exception] = None,
                 name: str = "fake"):
        self.name = name
        self.signals = signals or []
        self.error = error
        self.calls = 0

    def fetch(self) -> List[TrendSignal]:
        self.calls += 1
        if self.error:
            raise self.error
        return list(self.signals)


class FakeGenerator(BaseGenerator):
    name = "fake"

    def __init__(self, fail_for=(), on_generate=None):
        self.fail_for = set(fail_for)
        self.on_generate = on_generate
        self.calls = []

    def generate(self, topic, score, signal):
        self.calls.append(topic)
        if self.on_generate:
            self.on_generate(topic)
        if topic in self.fail_for:
            raise GenerationFailed(f"no story for {topic}")
        return StoryDraft(title=f"Story about {topic}", body=f"{topic} is trending with score {score:g}.")


def make_signal(topic: str, score: float = 1.0, at: Optional[datetime] = None, source: str = "fake") -> TrendSignal:
    return TrendSignal(source=source, topic=topic, score=score, observed_at=at or T0)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def store():
    return StoryStore(grace_seconds=60)


@pytest.fixture()
def make_refresher(store, clock):
    # Monta um StoryRefresher com fakes; ttl=60s, grace=60s, intervalo=30s
    def _make(feeds, generator=None, near_duplicate_threshold=None, **kwargs):
        normalizer = Normalizer.from_feeds(feeds, near_duplicate_threshold=near_duplicate_threshold)
        synthesizer = StorySynthesizer(generator or FakeGenerator(), ttl_seconds=60, clock=clock)
        params = dict(
            interval_seconds=30,
            cycle_timeout_seconds=300,
            backoff_base_seconds=10,
            backoff_max_seconds=40,
            synthesis_workers=1,
            clock=clock,
        )
        params.update(kwargs)
        return StoryRefresher(feeds, normalizer, synthesizer, store, **params)
    return _make


@pytest.fixture()
def fake_feed():
    now = utc_now()
    return FakeFeed([
        make_signal("AI trends", 9, at=now),
        make_signal(" ai   trends ", 7, at=now),
        make_signal("World Cup", 5, at=now),
    ])


@pytest.fixture()
def app(monkeypatch, fake_feed):
    # Patches para impedir network/scheduler no startup
    from trendstory.api import main as api_main

    class DummyScheduler:
        def add_job(self, *a, **k): pass
        def start(self): pass
        def shutdown(self, wait=False): pass
    monkeypatch.setattr(api_main, "scheduler", DummyScheduler(), raising=True)

    store = StoryStore(grace_seconds=60)
    normalizer = Normalizer.from_feeds([fake_feed], near_duplicate_threshold=None)
    synthesizer = StorySynthesizer(FakeGenerator(), ttl_seconds=60)
    refresher = StoryRefresher(
        [fake_feed], normalizer, synthesizer, store,
        interval_seconds=30, cycle_timeout_seconds=60,
        backoff_base_seconds=10, backoff_max_seconds=40,
    )
    monkeypatch.setattr(api_main, "store", store, raising=True)
    monkeypatch.setattr(api_main, "refresher", refresher, raising=True)
    monkeypatch.setattr(api_main, "query", api_main.QueryService(store, normalizer), raising=True)
    return api_main.app


@pytest.fixture()
def client(app):
    from fastapi.testclient import TestClient
    # Usa contexto para garantir lifespan mas com patches aplicados
    with TestClient(app) as c:
        yield c
