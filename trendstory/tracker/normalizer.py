import math
import re
import unicodedata
import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Mapping, Optional, Sequence
from datasketch import MinHash, MinHashLSH

from trendstory.feeds.base import BaseFeed, compile_decorations
from trendstory.storage.models import TrendKey, TrendSignal
from trendstory.utils.tz_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

_NUM_PERM = 128

# Decoração comum a qualquer provider: hashtag/menção e aspas/colchetes em volta
GENERIC_DECORATIONS = compile_decorations(
    r"^[#@]+",
    r"""^["'“”‘’«»\[\(]+""",
    r"""["'“”‘’«»\]\)]+$""",
)
_WS = re.compile(r"\s+")


def normalize_text(text: str, decorations: Sequence[re.Pattern] = ()) -> str:
    text = unicodedata.normalize("NFKC", text or "").strip()
    for pattern in tuple(decorations) + GENERIC_DECORATIONS:
        text = pattern.sub("", text).strip()
    return _WS.sub(" ", text.lower()).strip()


def make_trend_key(topic: str, decorations: Sequence[re.Pattern] = ()) -> Optional[TrendKey]:
    normalized = normalize_text(topic, decorations)
    if not normalized:
        return None
    return TrendKey.from_normalized(normalized)


def _better(a: TrendSignal, b: TrendSignal) -> bool:
    """True se `a` ganha de `b`: maior score, no empate o mais recente."""
    if a.score != b.score:
        return a.score > b.score
    return ensure_utc(a.observed_at) > ensure_utc(b.observed_at)


class NormalizedBatch(dict):
    """TrendKey -> melhor TrendSignal, com os contadores da normalização.

    `aliases` guarda id da chave absorvida -> chave do grupo (quase duplicados).
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.dropped = 0
        self.merged = 0
        self.aliases: Dict[str, TrendKey] = {}


class Normalizer:
    def __init__(
        self,
        decorations: Optional[Mapping[str, Sequence[re.Pattern]]] = None,
        max_signal_age_seconds: Optional[int] = None,
        near_duplicate_threshold: Optional[float] = None,
    ):
        self.decorations: Dict[str, Sequence[re.Pattern]] = dict(decorations or {})
        self.max_signal_age = timedelta(seconds=max_signal_age_seconds) if max_signal_age_seconds else None
        self.near_duplicate_threshold = near_duplicate_threshold or None

    @classmethod
    def from_feeds(cls, feeds: Iterable[BaseFeed], **kwargs) -> "Normalizer":
        return cls(decorations={f.name: f.DECORATIONS for f in feeds}, **kwargs)

    def key_for(self, topic: str, source: Optional[str] = None) -> Optional[TrendKey]:
        return make_trend_key(topic, self.decorations.get(source, ()))

    def _build_minhash(self, text: str) -> MinHash:
        m = MinHash(num_perm=_NUM_PERM)
        for token in set(text.split()):
            m.update(token.encode("utf-8"))
        return m

    def normalize(self, signals: Sequence[TrendSignal], now: Optional[datetime] = None,
                  aliases: Optional[Mapping[str, TrendKey]] = None) -> NormalizedBatch:
        """
        Agrupa sinais por TrendKey mantendo o melhor de cada grupo.

        `aliases` são merges de ciclos anteriores (id absorvido -> chave do grupo);
        um tópico já absorvido continua caindo na mesma chave mesmo sozinho no lote.
        """
        now = now or utc_now()
        aliases = aliases or {}
        batch = NormalizedBatch()
        keyed: List[tuple] = []

        for signal in signals:
            if not math.isfinite(signal.score):
                batch.dropped += 1
                continue
            if self.max_signal_age and now - ensure_utc(signal.observed_at) > self.max_signal_age:
                batch.dropped += 1
                continue
            key = self.key_for(signal.topic, signal.source)
            if key is None:
                batch.dropped += 1
                continue
            key = aliases.get(key.id, key)
            keyed.append((key, signal))

        # Processa do melhor para o pior: o melhor sinal sempre fixa a chave do grupo
        keyed.sort(key=lambda ks: (ks[1].score, ensure_utc(ks[1].observed_at), ks[0].normalized), reverse=True)

        lsh = MinHashLSH(threshold=self.near_duplicate_threshold, num_perm=_NUM_PERM) \
            if self.near_duplicate_threshold else None
        by_id: Dict[str, TrendKey] = {}
        heads: Dict[str, int] = {}   # ordem de inserção no LSH (menor = mais quente)

        for key, signal in keyed:
            if key.id in by_id:
                target = by_id[key.id]
            else:
                target = key
                if lsh is not None:
                    m = self._build_minhash(key.normalized)
                    near = lsh.query(m)
                    if near:
                        # quase duplicado de um tópico já visto (mais quente)
                        target = by_id[min(near, key=heads.__getitem__)]
                        batch.merged += 1
                        batch.aliases[key.id] = target
                    else:
                        lsh.insert(key.id, m)
                        heads[key.id] = len(heads)
                by_id[key.id] = target

            best = batch.get(target)
            if best is None or _better(signal, best):
                batch[target] = signal

        if batch.dropped or batch.merged:
            logger.debug("Normalized %d signals into %d keys (%d dropped, %d merged)",
                         len(signals), len(batch), batch.dropped, batch.merged)
        return batch
