import logging
import requests
import feedparser
from datetime import datetime, timezone
from typing import List, Optional
from .base import BaseFeed, build_session
from trendstory.errors import SourceMalformed, SourceUnavailable
from trendstory.storage.models import TrendSignal
from trendstory.utils.tz_utils import utc_now

logger = logging.getLogger(__name__)

_SESSION = build_session()


def parse_traffic(raw: Optional[str]) -> Optional[float]:
    """'2,000+' -> 2000.0, '50K+' -> 50000.0; None se não der para interpretar."""
    if not raw:
        return None
    text = raw.strip().rstrip("+").replace(",", "").upper()
    mult = 1
    if text.endswith("K"):
        mult, text = 1_000, text[:-1]
    elif text.endswith("M"):
        mult, text = 1_000_000, text[:-1]
    try:
        return float(text) * mult
    except ValueError:
        return None


class GoogleTrendsFeed(BaseFeed):
    name = "google_trends"
    BASE_URL = "https://trends.google.com/trending/rss"

    def __init__(self, geo: str = "US", max_items: int = 20, timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.geo: str = geo.upper()
        self.max_items: int = max_items
        self.timeout: float = timeout
        self.session = session or _SESSION

    def fetch(self) -> List[TrendSignal]:
        try:
            response = self.session.get(self.BASE_URL, params={"geo": self.geo}, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise SourceUnavailable(self.name, str(e)) from e

        feed = feedparser.parse(response.text)
        # bozo sem nenhuma entrada = não era RSS (HTML de erro, captcha...)
        if feed.bozo and not feed.entries:
            raise SourceMalformed(self.name, f"unparseable feed: {feed.get('bozo_exception')}")

        now = utc_now()
        signals: List[TrendSignal] = []
        for rank, entry in enumerate(feed.entries[: self.max_items]):
            title = (entry.get("title") or "").strip()
            if not title:
                continue

            observed = now
            if entry.get("published_parsed"):
                try:
                    observed = datetime(*entry.published_parsed[:6], tzinfo=timezone.utc)
                except (TypeError, ValueError):
                    observed = now

            traffic_raw = entry.get("ht_approx_traffic")
            traffic = parse_traffic(traffic_raw)
            # sem tráfego, usa a posição no feed (primeiro = mais quente)
            score = traffic if traffic is not None else float(self.max_items - rank)

            signals.append(TrendSignal(
                source=self.name,
                topic=title,
                score=score,
                observed_at=observed,
                extra={
                    "geo": self.geo,
                    "rank": rank + 1,
                    "approx_traffic": traffic_raw,
                    "link": entry.get("ht_news_item_url") or entry.get("link"),
                    "news_title": entry.get("ht_news_item_title"),
                    "picture": entry.get("ht_picture"),
                },
            ))

        logger.debug("Google Trends (%s) returned %d signals", self.geo, len(signals))
        return signals
