import logging
import random
from concurrent.futures import ThreadPoolExecutor, as_completed, TimeoutError as FuturesTimeout
from datetime import datetime, timedelta
from enum import Enum
from threading import Lock
from typing import Callable, Dict, List, Optional, Sequence

from trendstory.errors import GenerationFailed, SourceError, SourceMalformed, StoreInvariantViolation
from trendstory.feeds.base import BaseFeed
from trendstory.storage.models import CycleOutcome, RefreshCycle, StoryArtifact, TrendSignal
from trendstory.storage.repository import StoryStore
from trendstory.synthesizer.base import StorySynthesizer
from trendstory.tracker.normalizer import NormalizedBatch, Normalizer
from trendstory.utils.tz_utils import utc_now

logger = logging.getLogger(__name__)

_MAX_FETCH_WORKERS = 8


class RefreshState(str, Enum):
    idle = "idle"
    fetching = "fetching"
    normalizing = "normalizing"
    synthesizing = "synthesizing"
    committing = "committing"
    backoff = "backoff"


_READY_STATES = (RefreshState.idle, RefreshState.backoff)

COUNTER_NAMES = (
    "cycles_total", "cycles_succeeded", "cycles_partial", "cycles_failed", "ticks_skipped",
    "source_unavailable", "source_malformed", "generation_failed", "signals_dropped",
    "artifacts_evicted", "keys_collected", "snapshot_errors",
)


class CycleTimeout(Exception):
    pass


class StoryRefresher:
    """
    Dono do ciclo fetch -> normalize -> synthesize -> commit.

    O estado é um único valor protegido por `_state_lock` e só muda aqui dentro;
    isso garante um ciclo por vez (ticks que chegam durante um ciclo são pulados).
    Nenhum lock do store é segurado durante fetch ou geração: o store só é tocado
    no commit, chave por chave.
    """

    JOB_ID = "refresh_stories"
    SWEEP_JOB_ID = "evict_expired"

    def __init__(
        self,
        feeds: Sequence[BaseFeed],
        normalizer: Normalizer,
        synthesizer: StorySynthesizer,
        store: StoryStore,
        interval_seconds: int,
        cycle_timeout_seconds: int,
        backoff_base_seconds: int,
        backoff_max_seconds: int,
        jitter_seconds: int = 0,
        max_idle_cycles: int = 3,
        synthesis_workers: int = 4,
        snapshot_path: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.feeds = list(feeds)
        self.normalizer = normalizer
        self.synthesizer = synthesizer
        self.store = store
        self.interval_seconds = interval_seconds
        self.cycle_timeout = timedelta(seconds=cycle_timeout_seconds)
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.jitter_seconds = jitter_seconds
        self.max_idle_cycles = max_idle_cycles
        self.synthesis_workers = synthesis_workers
        self.snapshot_path = snapshot_path
        self.clock = clock

        self._state_lock = Lock()
        self._state = RefreshState.idle
        self._cycle_no = 0
        self._commit_no = 0   # só avança em ciclos que chegaram ao commit (ciclo de vida das chaves)
        self._failures = 0
        self._last_cycle: Optional[RefreshCycle] = None
        self._last_success_at: Optional[datetime] = None
        self._counters: Dict[str, int] = {name: 0 for name in COUNTER_NAMES}
        self._job = None

    # ---------- leitura de estado (health) ----------
    @property
    def state(self) -> RefreshState:
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    @property
    def last_cycle(self) -> Optional[RefreshCycle]:
        return self._last_cycle

    @property
    def last_success_at(self) -> Optional[datetime]:
        return self._last_success_at

    def counters(self) -> Dict[str, int]:
        with self._state_lock:
            return dict(self._counters)

    def _count(self, name: str, n: int = 1) -> None:
        with self._state_lock:
            self._counters[name] += n

    def _set_state(self, state: RefreshState) -> None:
        with self._state_lock:
            self._state = state

    def backoff_delay(self) -> float:
        if self._failures <= 0:
            return float(self.interval_seconds)
        return float(min(self.backoff_base_seconds * 2 ** (self._failures - 1), self.backoff_max_seconds))

    # ---------- agendamento ----------
    def schedule(self, scheduler) -> None:
        self._job = scheduler.add_job(
            self.tick, "interval",
            seconds=self.interval_seconds,
            jitter=self.jitter_seconds or None,
            id=self.JOB_ID,
            replace_existing=True,
        )
        # varredura independente: remove conteúdo vencido mesmo com refresh falhando
        scheduler.add_job(
            self.sweep, "interval",
            seconds=self.interval_seconds,
            id=self.SWEEP_JOB_ID,
            replace_existing=True,
        )

    def _reschedule(self, delay_seconds: float) -> None:
        if self._job is None:
            return
        jitter = random.uniform(0, self.jitter_seconds) if self.jitter_seconds else 0
        self._job.modify(next_run_time=utc_now() + timedelta(seconds=delay_seconds + jitter))

    def sweep(self) -> int:
        evicted = self.store.evict_expired(self.clock())
        if evicted:
            self._count("artifacts_evicted", evicted)
        return evicted

    # ---------- ciclo ----------
    def tick(self) -> Optional[RefreshCycle]:
        with self._state_lock:
            if self._state not in _READY_STATES:
                self._counters["ticks_skipped"] += 1
                logger.warning("Refresh tick skipped: cycle %d still %s", self._cycle_no, self._state.value)
                return None
            self._cycle_no += 1
            cycle_no = self._cycle_no
            self._state = RefreshState.fetching

        logger.info("Refresh cycle %d started", cycle_no)
        cycle = RefreshCycle(cycle_no=cycle_no, started_at=self.clock())
        try:
            self._run_cycle(cycle)
        except StoreInvariantViolation:
            cycle.outcome = CycleOutcome.failed
            cycle.error = "store invariant violation"
            logger.critical("Store invariant violated during cycle %d", cycle_no, exc_info=True)
            self._finish(cycle)
            raise
        except Exception as e:
            cycle.outcome = CycleOutcome.failed
            cycle.error = f"{type(e).__name__}: {e}"
            logger.exception("Refresh cycle %d crashed", cycle_no)
        self._finish(cycle)
        return cycle

    def _remaining(self, deadline: datetime) -> float:
        return max((deadline - self.clock()).total_seconds(), 0.0)

    def _check_deadline(self, deadline: datetime) -> None:
        if self.clock() > deadline:
            raise CycleTimeout()

    def _run_cycle(self, cycle: RefreshCycle) -> None:
        deadline = cycle.started_at + self.cycle_timeout
        try:
            signals = self._fetch_all(cycle, deadline)
            self._check_deadline(deadline)

            self._set_state(RefreshState.normalizing)
            batch = self.normalizer.normalize(signals, now=self.clock(), aliases=self.store.aliases())
            cycle.signals_dropped = batch.dropped
            cycle.keys_normalized = len(batch)
            if batch.dropped:
                self._count("signals_dropped", batch.dropped)

            self._set_state(RefreshState.synthesizing)
            artifacts = self._synthesize_all(batch, cycle, deadline)
            if batch and not artifacts:
                cycle.outcome = CycleOutcome.failed
                cycle.error = f"all {len(batch)} stories failed to generate"
                return

            self._set_state(RefreshState.committing)
            self._commit(batch, artifacts, cycle, deadline)
        except SourceError as e:
            cycle.outcome = CycleOutcome.failed
            cycle.error = f"{type(e).__name__}: {e}"
            return
        except CycleTimeout:
            cycle.outcome = CycleOutcome.failed
            cycle.error = f"cycle exceeded {int(self.cycle_timeout.total_seconds())}s ceiling"
            logger.error("Refresh cycle %d aborted: %s", cycle.cycle_no, cycle.error)
            return

        cycle.outcome = CycleOutcome.partial if cycle.failed_keys else CycleOutcome.success

    def _fetch_all(self, cycle: RefreshCycle, deadline: datetime) -> List[TrendSignal]:
        signals: List[TrendSignal] = []
        if not self.feeds:
            return signals

        failures: List[SourceError] = []
        ex = ThreadPoolExecutor(max_workers=min(len(self.feeds), _MAX_FETCH_WORKERS))
        futures = {ex.submit(feed.fetch): feed for feed in self.feeds}
        try:
            for fut in as_completed(futures, timeout=self._remaining(deadline)):
                feed = futures[fut]
                try:
                    signals.extend(fut.result() or [])
                except SourceError as e:
                    failures.append(e)
                except Exception as e:
                    logger.exception("Feed %s raised an unexpected error", feed.name)
                    failures.append(SourceMalformed(feed.name, f"{type(e).__name__}: {e}"))
        except FuturesTimeout:
            raise CycleTimeout()
        finally:
            ex.shutdown(wait=False, cancel_futures=True)

        for e in failures:
            cycle.source_errors[e.source] = e.reason
            self._count("source_malformed" if isinstance(e, SourceMalformed) else "source_unavailable")
            logger.warning("Feed %s failed: %s", e.source, e.reason)

        cycle.signals_fetched = len(signals)
        # só falha o ciclo se nenhum provider respondeu
        if failures and len(failures) == len(self.feeds):
            malformed = [e for e in failures if isinstance(e, SourceMalformed)]
            raise (malformed or failures)[0]
        return signals

    def _synthesize_all(self, batch: NormalizedBatch, cycle: RefreshCycle,
                        deadline: datetime) -> List[StoryArtifact]:
        artifacts: List[StoryArtifact] = []
        if not batch:
            return artifacts

        ex = ThreadPoolExecutor(max_workers=min(len(batch), self.synthesis_workers))
        # um único carimbo por ciclo: stories do mesmo ciclo empatam em frescor e ordenam por score
        futures = {
            ex.submit(self.synthesizer.synthesize, key, signal, cycle.started_at): key
            for key, signal in batch.items()
        }
        try:
            for fut in as_completed(futures, timeout=self._remaining(deadline)):
                key = futures[fut]
                try:
                    artifacts.append(fut.result())
                except GenerationFailed as e:
                    cycle.failed_keys[key.id] = e.reason
                    self._count("generation_failed")
                    logger.warning("Story generation failed for '%s': %s", key.normalized, e.reason)
                self._check_deadline(deadline)
        except FuturesTimeout:
            raise CycleTimeout()
        finally:
            ex.shutdown(wait=False, cancel_futures=True)
        return artifacts

    def _commit(self, batch: NormalizedBatch, artifacts: List[StoryArtifact],
                cycle: RefreshCycle, deadline: datetime) -> None:
        commit_no = self._commit_no + 1
        self.store.mark_seen(batch.keys(), commit_no)
        for artifact in sorted(artifacts, key=lambda a: a.key.id):
            self._check_deadline(deadline)
            result = self.store.upsert(artifact)
            setattr(cycle, result, getattr(cycle, result) + 1)
        if batch.aliases:
            self.store.add_aliases(batch.aliases)
        self._commit_no = commit_no

        now = self.clock()
        evicted = self.store.evict_expired(now)
        collected = self.store.collect_idle(commit_no, self.max_idle_cycles)
        cycle.evicted = evicted + collected
        if evicted:
            self._count("artifacts_evicted", evicted)
        if collected:
            self._count("keys_collected", collected)

    def _finish(self, cycle: RefreshCycle) -> None:
        cycle.finished_at = self.clock()
        delay = None
        with self._state_lock:
            self._last_cycle = cycle
            self._counters["cycles_total"] += 1
            if cycle.outcome == CycleOutcome.success:
                self._counters["cycles_succeeded"] += 1
            elif cycle.outcome == CycleOutcome.partial:
                self._counters["cycles_partial"] += 1
            else:
                self._counters["cycles_failed"] += 1

            if cycle.completed:
                # só um ciclo totalmente bem-sucedido zera o backoff; parcial mantém o contador
                if cycle.outcome == CycleOutcome.success:
                    self._failures = 0
                self._last_success_at = cycle.finished_at
                self._state = RefreshState.idle
            else:
                self._failures += 1
                self._state = RefreshState.backoff
                delay = self.backoff_delay()

        if delay is not None:
            logger.warning("Refresh cycle %d failed (%s); backing off %.0fs (failure #%d)",
                           cycle.cycle_no, cycle.error, delay, self._failures)
            self._reschedule(delay)
            return

        logger.info(
            "Refresh cycle %d %s: %d signals, %d keys, %d created, %d updated, %d evicted, %d failed",
            cycle.cycle_no, cycle.outcome.value, cycle.signals_fetched, cycle.keys_normalized,
            cycle.created, cycle.updated, cycle.evicted, len(cycle.failed_keys),
        )
        if self.snapshot_path:
            try:
                self.store.save_snapshot(self.snapshot_path)
            except OSError as e:
                self._count("snapshot_errors")
                logger.error("Failed to write snapshot %s: %s", self.snapshot_path, e)
