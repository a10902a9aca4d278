from __future__ import annotations
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)

OVERLAP_POLICIES = ("skip", "serialize")


class IntervalScheduler:
    """
    Déclenche `job` à chaque frontière d'intervalle (toutes les minutes "entières" par défaut).
    overlap_policy:
      - skip      : un tick qui tombe pendant le précédent est abandonné (et compté)
      - serialize : il attend la fin du précédent
    """

    def __init__(self, interval_s: float, job: Callable[[], Awaitable[Any]], overlap_policy: str = "skip"):
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        if overlap_policy not in OVERLAP_POLICIES:
            raise ValueError(f"overlap_policy must be one of {OVERLAP_POLICIES}")
        self.interval_s = float(interval_s)
        self.job = job
        self.overlap_policy = overlap_policy
        self.runs = 0
        self.skipped = 0
        self.last_error: Optional[str] = None
        self._lock = asyncio.Lock()
        self._stop = asyncio.Event()
        self._pending: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def tick(self) -> Optional[Any]:
        """Un tick, sous la politique de chevauchement. None si sauté ou en échec."""
        if self.overlap_policy == "skip" and self._lock.locked():
            self.skipped += 1
            logger.warning("[scheduler] previous tick still running, tick skipped (%d so far)", self.skipped)
            return None
        async with self._lock:
            try:
                result = await self.job()
            except Exception as e:
                self.last_error = repr(e)
                logger.exception("[scheduler] tick failed")
                return None
            self.runs += 1
            self.last_error = None
            return result

    def _delay_to_next_boundary(self) -> float:
        # attend jusqu'à la prochaine frontière "entière" de l'intervalle
        return self.interval_s - (time.time() % self.interval_s)

    async def run_forever(self) -> None:
        self._stop.clear()
        logger.info("[scheduler] started interval=%ss policy=%s", self.interval_s, self.overlap_policy)
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._delay_to_next_boundary())
            except asyncio.TimeoutError:
                task = asyncio.create_task(self.tick())
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
        # arrêt propre : le tick en vol (et ses ordres) va au bout
        if self._pending:
            logger.info("[scheduler] waiting for %d in-flight tick(s)", len(self._pending))
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        logger.info("[scheduler] stopped after %d run(s), %d skipped", self.runs, self.skipped)

    def stop(self) -> None:
        self._stop.set()
