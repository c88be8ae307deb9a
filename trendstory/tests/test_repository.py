# trendstory/tests/test_repository.py
import json
from datetime import timedelta

import pytest

from conftest import T0
from trendstory.errors import NotFound, StoreInvariantViolation
from trendstory.storage.models import StoryArtifact, TrendKey
from trendstory.storage.repository import StoryStore


def _artifact(topic="ai trends", score=9.0, at=T0, ttl=60, title=None):
    return StoryArtifact(
        key=TrendKey.from_normalized(topic),
        title=title or f"Story {topic}",
        body=f"{topic} body",
        generated_at=at,
        score=score,
        deadline=at + timedelta(seconds=ttl),
        source="fake",
    )


def test_upsert_is_idempotent(store):
    art = _artifact()
    assert store.upsert(art) == "created"
    assert store.upsert(art) == "unchanged"
    assert len(store) == 1
    assert store.get(art.key, now=T0) == art


def test_upsert_replaces_whole_artifact(store):
    store.upsert(_artifact(title="v1"))
    assert store.upsert(_artifact(title="v2", at=T0 + timedelta(seconds=10))) == "updated"
    assert len(store) == 1
    assert store.get(TrendKey.from_normalized("ai trends").id, now=T0).title == "v2"


def test_id_collision_is_an_invariant_violation(store):
    art = _artifact()
    fake_key = TrendKey(id=art.key.id, normalized="something else")
    store.upsert(art)
    with pytest.raises(StoreInvariantViolation):
        store.upsert(art.model_copy(update={"key": fake_key}))
    assert store.get(art.key, now=T0) == art


def test_get_missing_raises_not_found(store):
    with pytest.raises(NotFound):
        store.get("deadbeefdeadbeef", now=T0)


def test_ttl_and_grace_scenario():
    # TTL=60s, grace=60s, criado em t=0
    store = StoryStore(grace_seconds=60)
    art = _artifact(ttl=60)
    store.upsert(art)

    got = store.get(art.key, now=T0 + timedelta(seconds=90))
    assert got == art
    assert got.is_stale(T0 + timedelta(seconds=90))
    assert store.evict_expired(T0 + timedelta(seconds=90)) == 0

    assert store.evict_expired(T0 + timedelta(seconds=130)) == 1
    with pytest.raises(NotFound):
        store.get(art.key, now=T0 + timedelta(seconds=130))


def test_list_never_returns_beyond_grace(store):
    store.upsert(_artifact("old", at=T0 - timedelta(seconds=200)))
    store.upsert(_artifact("stale", at=T0 - timedelta(seconds=90)))
    store.upsert(_artifact("fresh", at=T0))
    topics = [a.key.normalized for a in store.list(now=T0)]
    assert topics == ["fresh", "stale"]
    # expirado fisicamente ainda no store, mas nunca listado
    assert len(store) == 3


def test_list_orders_by_freshness_then_score_and_filters(store):
    store.upsert(_artifact("a", score=1, at=T0))
    store.upsert(_artifact("b", score=5, at=T0))
    store.upsert(_artifact("c", score=9, at=T0 - timedelta(seconds=30)))
    assert [a.key.normalized for a in store.list(now=T0)] == ["b", "a", "c"]
    assert [a.key.normalized for a in store.list(within=timedelta(seconds=10), now=T0)] == ["b", "a"]
    assert [a.key.normalized for a in store.list(limit=1, now=T0)] == ["b"]


def test_collect_idle_removes_keys_not_seen_recently(store):
    fresh, idle = _artifact("fresh"), _artifact("idle")
    store.upsert(fresh)
    store.upsert(idle)
    store.mark_seen([idle.key], cycle_no=1)
    store.mark_seen([fresh.key], cycle_no=4)
    assert store.collect_idle(cycle_no=4, max_idle_cycles=3) == 1
    assert [a.key.normalized for a in store.list(now=T0)] == ["fresh"]


def test_snapshot_roundtrip_skips_expired(tmp_path):
    path = str(tmp_path / "data" / "stories.json")
    store = StoryStore(grace_seconds=60)
    store.upsert(_artifact("keep", at=T0))
    store.upsert(_artifact("gone", at=T0 - timedelta(seconds=100)))
    store.save_snapshot(path)
    assert len(json.loads(open(path, encoding="utf-8").read())) == 2

    restored = StoryStore(grace_seconds=60)
    assert restored.load_snapshot(path, now=T0 + timedelta(seconds=30)) == 1
    assert restored.get(TrendKey.from_normalized("keep").id, now=T0).title == "Story keep"
    # chaves restauradas também saem pelo GC de ociosidade
    assert restored.collect_idle(cycle_no=2, max_idle_cycles=3) == 0
    assert restored.collect_idle(cycle_no=3, max_idle_cycles=3) == 1
    assert len(restored) == 0


def test_corrupt_snapshot_starts_empty(tmp_path):
    path = tmp_path / "stories.json"
    path.write_text("{not json", encoding="utf-8")
    store = StoryStore(grace_seconds=60)
    assert store.load_snapshot(str(path)) == 0
    assert len(store) == 0
    assert store.load_snapshot(str(tmp_path / "missing.json")) == 0


def test_alias_resolves_to_group_story_and_drops_old_artifact(store):
    head, merged = _artifact("final tonight live", score=9), _artifact("final tonight", score=4)
    store.upsert(head)
    store.upsert(merged)
    store.mark_seen([head.key, merged.key], cycle_no=1)

    store.add_aliases({merged.key.id: head.key})

    assert len(store) == 1
    assert store.get(merged.key.id, now=T0) == head
    assert store.aliases() == {merged.key.id: head.key}


def test_alias_to_missing_story_is_ignored(store):
    store.add_aliases({"deadbeefdeadbeef": TrendKey.from_normalized("nothing")})
    assert store.aliases() == {}


def test_aliases_follow_their_group_out_of_the_store(store):
    head = _artifact("final tonight live")
    store.upsert(head)
    store.mark_seen([head.key], cycle_no=1)
    store.add_aliases({"0123456789abcdef": head.key})

    assert store.collect_idle(cycle_no=4, max_idle_cycles=3) == 1
    assert store.aliases() == {}
    with pytest.raises(NotFound):
        store.get("0123456789abcdef", now=T0)
