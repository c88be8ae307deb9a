from typing import List

from .base import BaseFeed
from .google_trends import GoogleTrendsFeed
from .hackernews import HackerNewsFeed

FEED_TYPES = {
    GoogleTrendsFeed.name: GoogleTrendsFeed,
    HackerNewsFeed.name: HackerNewsFeed,
}


def build_feeds(settings) -> List[BaseFeed]:
    feeds: List[BaseFeed] = []
    for name in settings.feed_names:
        if name == GoogleTrendsFeed.name:
            feeds.append(GoogleTrendsFeed(settings.geo, settings.max_items, settings.request_timeout_seconds))
        elif name == HackerNewsFeed.name:
            feeds.append(HackerNewsFeed(settings.max_items, settings.request_timeout_seconds))
        else:
            raise ValueError(f"unknown feed '{name}' (available: {', '.join(FEED_TYPES)})")
    return feeds


__all__ = ["BaseFeed", "GoogleTrendsFeed", "HackerNewsFeed", "FEED_TYPES", "build_feeds"]
