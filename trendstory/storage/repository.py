import os, json
import logging
import tempfile
from threading import Lock
from typing import Dict, Iterable, List, Mapping, Optional, Union
from datetime import datetime, timedelta

from pydantic import ValidationError

from trendstory.errors import NotFound, StoreInvariantViolation
from trendstory.storage.models import StoryArtifact, TrendKey
from trendstory.utils.tz_utils import utc_now

logger = logging.getLogger(__name__)

CREATED, UPDATED, UNCHANGED = "created", "updated", "unchanged"


class StoryStore:
    """
    Cache em memória de StoryArtifact, uma entrada por TrendKey.

    O lock só protege a troca da referência de cada chave (e o registro de
    ciclos vistos). Artifacts são imutáveis, então leitores recebem sempre
    um objeto inteiro, antigo ou novo.
    """

    def __init__(self, grace_seconds: int = 0):
        self.grace = timedelta(seconds=grace_seconds)
        self._items: Dict[str, StoryArtifact] = {}
        self._last_seen: Dict[str, int] = {}   # key id -> último ciclo em que o tópico apareceu
        self._aliases: Dict[str, TrendKey] = {}  # id absorvido por quase duplicado -> chave do grupo
        self._lock = Lock()

    def __len__(self) -> int:
        return len(self._items)

    # ---------- escrita ----------
    def upsert(self, artifact: StoryArtifact) -> str:
        key_id = artifact.key.id
        with self._lock:
            current = self._items.get(key_id)
            if current is not None and current.key.normalized != artifact.key.normalized:
                raise StoreInvariantViolation(
                    f"id {key_id} claimed by '{current.key.normalized}' and '{artifact.key.normalized}'"
                )
            if current == artifact:
                return UNCHANGED
            self._items[key_id] = artifact
        return CREATED if current is None else UPDATED

    def evict_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utc_now()
        with self._lock:
            expired = [k for k, a in self._items.items() if a.is_expired(now, self.grace)]
            for k in expired:
                del self._items[k]
        if expired:
            logger.info("Evicted %d expired stories", len(expired))
        return len(expired)

    def mark_seen(self, keys: Iterable[TrendKey], cycle_no: int) -> None:
        with self._lock:
            for key in keys:
                self._last_seen[key.id] = cycle_no

    def collect_idle(self, cycle_no: int, max_idle_cycles: int) -> int:
        """Remove chaves (e seus artifacts) que não aparecem há mais de `max_idle_cycles` ciclos."""
        with self._lock:
            idle = [k for k, seen in self._last_seen.items() if cycle_no - seen >= max_idle_cycles]
            for k in idle:
                del self._last_seen[k]
                self._items.pop(k, None)
            for alias, head in list(self._aliases.items()):
                if head.id not in self._last_seen:
                    del self._aliases[alias]
        if idle:
            logger.info("Collected %d idle trend keys", len(idle))
        return len(idle)

    def add_aliases(self, aliases: Mapping[str, TrendKey]) -> None:
        """
        Registra chaves absorvidas por quase duplicados. O artifact antigo da
        chave absorvida sai do store: o tópico passa a ter um único artifact.
        """
        with self._lock:
            for alias_id, head in aliases.items():
                if alias_id == head.id or head.id not in self._items:
                    continue
                for other, target in self._aliases.items():
                    if target.id == alias_id:
                        self._aliases[other] = head
                self._aliases[alias_id] = head
                self._items.pop(alias_id, None)
                self._last_seen.pop(alias_id, None)

    def aliases(self) -> Dict[str, TrendKey]:
        with self._lock:
            return dict(self._aliases)

    # ---------- leitura ----------
    def get(self, key: Union[TrendKey, str], now: Optional[datetime] = None) -> StoryArtifact:
        key_id = key.id if isinstance(key, TrendKey) else key
        now = now or utc_now()
        head = self._aliases.get(key_id)
        if head is not None:
            key_id = head.id
        artifact = self._items.get(key_id)
        if artifact is None or artifact.is_expired(now, self.grace):
            raise NotFound(key_id)
        return artifact

    def list(self, within: Optional[timedelta] = None, limit: Optional[int] = None,
             now: Optional[datetime] = None) -> List[StoryArtifact]:
        now = now or utc_now()
        with self._lock:
            items = list(self._items.values())
        items = [a for a in items if not a.is_expired(now, self.grace)]
        if within is not None:
            items = [a for a in items if a.generated_at >= now - within]
        # mais fresco primeiro, depois maior score
        items.sort(key=lambda a: (a.generated_at, a.score), reverse=True)
        if limit is not None:
            items = items[:limit]
        return items

    # ---------- snapshot em disco (best-effort) ----------
    def save_snapshot(self, path: str) -> None:
        with self._lock:
            items = list(self._items.values())
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        # escreve em arquivo temporário e troca, para nunca deixar JSON pela metade
        fd, tmp = tempfile.mkstemp(dir=os.path.dirname(os.path.abspath(path)), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump([a.model_dump(mode="json") for a in items], f, ensure_ascii=False, indent=2)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise

    def load_snapshot(self, path: str, now: Optional[datetime] = None) -> int:
        if not os.path.exists(path):
            return 0
        now = now or utc_now()
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            artifacts = [StoryArtifact.model_validate(item) for item in raw]
        except (json.JSONDecodeError, ValidationError, TypeError) as e:
            logger.warning("Snapshot %s is empty or corrupt, starting from scratch: %s", path, e)
            return 0
        keys = []
        for artifact in artifacts:
            if artifact.is_expired(now, self.grace):
                continue
            self.upsert(artifact)
            keys.append(artifact.key)
        # ciclo 0: chaves restauradas entram no GC de ociosidade como qualquer outra
        self.mark_seen(keys, 0)
        logger.info("Loaded %d stories from snapshot %s", len(keys), path)
        return len(keys)
