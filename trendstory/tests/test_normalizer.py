# trendstory/tests/test_normalizer.py
import math
from datetime import timedelta

from conftest import LONG_TOPIC, T0, make_signal
from trendstory.feeds import HackerNewsFeed
from trendstory.storage.models import TrendKey
from trendstory.tracker.normalizer import Normalizer, make_trend_key, normalize_text


def test_normalize_text_case_whitespace_and_decoration():
    assert normalize_text("  AI   Trends\t") == "ai trends"
    assert normalize_text("#WorldCup") == "worldcup"
    assert normalize_text('"Taylor Swift"') == "taylor swift"
    assert normalize_text("   ") == ""


def test_trend_key_is_deterministic():
    a = make_trend_key("AI trends")
    b = make_trend_key(" ai   TRENDS ")
    assert a == b
    assert a.id == TrendKey.from_normalized("ai trends").id
    assert len(a.id) == 16
    assert make_trend_key("   ") is None


def test_case_and_whitespace_duplicates_collapse_to_one_key():
    topics = ["Climate Summit", "climate summit", "  CLIMATE   summit ", "Election", "election  "]
    batch = Normalizer().normalize([make_signal(t, i) for i, t in enumerate(topics)], now=T0)
    assert sorted(k.normalized for k in batch) == ["climate summit", "election"]


def test_ai_trends_scenario_keeps_highest_score():
    batch = Normalizer().normalize([
        make_signal("AI trends", 9),
        make_signal(" ai   trends ", 7),
    ], now=T0)
    assert len(batch) == 1
    key, best = next(iter(batch.items()))
    assert key.normalized == "ai trends"
    assert best.score == 9


def test_score_tie_keeps_most_recent():
    older = make_signal("Topic", 5, at=T0 - timedelta(minutes=5))
    newer = make_signal("topic", 5, at=T0 - timedelta(minutes=1))
    batch = Normalizer().normalize([newer, older], now=T0)
    assert list(batch.values())[0] is newer
    batch = Normalizer().normalize([older, newer], now=T0)
    assert list(batch.values())[0] is newer


def test_empty_stale_and_non_finite_signals_are_dropped_and_counted():
    normalizer = Normalizer(max_signal_age_seconds=600)
    batch = normalizer.normalize([
        make_signal("   "),
        make_signal("#"),
        make_signal("old news", 3, at=T0 - timedelta(hours=2)),
        make_signal("weird", math.nan),
        make_signal("fine", 1),
    ], now=T0)
    assert [k.normalized for k in batch] == ["fine"]
    assert batch.dropped == 4


def test_provider_decoration_is_stripped_per_source():
    normalizer = Normalizer.from_feeds([HackerNewsFeed()])
    batch = normalizer.normalize([
        make_signal("Show HN: My Tiny Database", 10, source="hackernews"),
        make_signal("my tiny database", 3, source="other"),
        make_signal("A Paper on Compilers [pdf]", 4, source="hackernews"),
    ], now=T0)
    assert sorted(k.normalized for k in batch) == ["a paper on compilers", "my tiny database"]
    # decoração do HN não vale para outras fontes
    assert normalizer.key_for("Show HN: x", "other").normalized == "show hn: x"


def test_near_duplicates_merge_into_best_key():
    normalizer = Normalizer(near_duplicate_threshold=0.8)
    batch = normalizer.normalize([
        make_signal(LONG_TOPIC, 4),
        make_signal(LONG_TOPIC + " live", 9),
        make_signal("stock market", 2),
    ], now=T0)
    # só um token de diferença: mesmo tópico, fica a chave do sinal mais quente
    assert sorted(k.normalized for k in batch) == sorted([LONG_TOPIC + " live", "stock market"])
    assert batch.merged == 1
    best = batch[make_trend_key(LONG_TOPIC + " live")]
    assert best.score == 9


def test_near_duplicate_detection_can_be_disabled():
    batch = Normalizer(near_duplicate_threshold=None).normalize([
        make_signal(LONG_TOPIC, 4),
        make_signal(LONG_TOPIC + " live", 9),
    ], now=T0)
    assert len(batch) == 2
    assert batch.merged == 0


def test_topics_differing_only_after_many_tokens_are_not_merged():
    shared = " ".join(f"w{i}" for i in range(32))
    a = shared + " " + " ".join(f"a{i}" for i in range(32))
    b = shared + " " + " ".join(f"b{i}" for i in range(32))
    batch = Normalizer(near_duplicate_threshold=0.8).normalize([make_signal(a, 5), make_signal(b, 4)], now=T0)
    assert len(batch) == 2
    assert batch.merged == 0


def test_merged_topic_is_reported_as_alias():
    head = make_trend_key(LONG_TOPIC + " live")
    batch = Normalizer(near_duplicate_threshold=0.8).normalize([
        make_signal(LONG_TOPIC, 4),
        make_signal(LONG_TOPIC + " live", 9),
    ], now=T0)
    assert batch.aliases == {make_trend_key(LONG_TOPIC).id: head}


def test_known_aliases_route_topic_to_group_key():
    head = make_trend_key(LONG_TOPIC + " live")
    aliases = {make_trend_key(LONG_TOPIC).id: head}
    # sozinho no lote, o tópico absorvido continua na chave do grupo
    batch = Normalizer(near_duplicate_threshold=0.8).normalize([make_signal(LONG_TOPIC, 6)], now=T0, aliases=aliases)
    assert list(batch) == [head]
    assert batch[head].score == 6
