import logging
import requests
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import List, Optional
from .base import BaseFeed, build_session, compile_decorations
from trendstory.errors import SourceMalformed, SourceUnavailable
from trendstory.storage.models import TrendSignal
from trendstory.utils.tz_utils import utc_now

logger = logging.getLogger(__name__)

_SESSION = build_session()
_MAX_ITEM_WORKERS = 8


class HackerNewsFeed(BaseFeed):
    name = "hackernews"
    TOP_STORIES_URL = "https://hacker-news.firebaseio.com/v0/topstories.json"
    ITEM_URL = "https://hacker-news.firebaseio.com/v0/item/{}.json"
    DECORATIONS = compile_decorations(
        r"^(show|ask|tell|launch)\s+hn\s*:\s*",
        r"\s*\[(pdf|video|audio)\]\s*$",
        r"\s*\((19|20)\d{2}\)\s*$",
    )

    def __init__(self, max_items: int = 20, timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.max_items: int = max_items
        self.timeout: float = timeout
        self.session = session or _SESSION

    def _get_json(self, url: str):
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise SourceUnavailable(self.name, str(e)) from e
        try:
            return response.json()
        except ValueError as e:
            raise SourceMalformed(self.name, f"invalid JSON from {url}") from e

    def fetch(self) -> List[TrendSignal]:
        ids = self._get_json(self.TOP_STORIES_URL)
        if not isinstance(ids, list):
            raise SourceMalformed(self.name, "top stories is not a list")
        ids = ids[: self.max_items]
        if not ids:
            return []

        # Qualquer item que falhe derruba o fetch inteiro: sem resultado parcial
        with ThreadPoolExecutor(max_workers=min(len(ids), _MAX_ITEM_WORKERS)) as ex:
            items = list(ex.map(lambda i: self._get_json(self.ITEM_URL.format(i)), ids))

        now = utc_now()
        signals: List[TrendSignal] = []
        for item in items:
            if not isinstance(item, dict) or item.get("type") != "story" or item.get("dead"):
                continue
            title = item.get("title")
            if not title:
                continue
            posted = None
            if isinstance(item.get("time"), (int, float)):
                posted = datetime.fromtimestamp(item["time"], tz=timezone.utc).isoformat()
            # observed_at = agora: a story estar no top agora é o sinal, não a data do post
            signals.append(TrendSignal(
                source=self.name,
                topic=title,
                score=float(item.get("score") or 0),
                observed_at=now,
                extra={
                    "link": item.get("url"),
                    "hn_id": item.get("id"),
                    "comments": item.get("descendants"),
                    "posted_at": posted,
                },
            ))
        return signals
