import re
from abc import ABC, abstractmethod
from typing import List, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util import Retry

from trendstory.storage.models import TrendSignal


def build_session(user_agent: str = "trend-story-api/1.0") -> requests.Session:
    """Session com pool + retry para os providers (menor latência / resiliente)."""
    session = requests.Session()
    retry = Retry(
        total=2,
        backoff_factor=0.3,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset({"GET"}),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(pool_connections=10, pool_maxsize=20, max_retries=retry)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    session.headers.update({"User-Agent": user_agent})
    return session


class BaseFeed(ABC):
    name: str = "base"
    # Decoração própria do provider, removida pelo normalizer antes de gerar a chave
    DECORATIONS: Tuple[re.Pattern, ...] = ()

    @abstractmethod
    def fetch(self) -> List[TrendSignal]:
        """Levanta SourceUnavailable/SourceMalformed; lista vazia é um ciclo válido."""


def compile_decorations(*patterns: str) -> Tuple[re.Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)
