"""Delivery Coordinator — per-equipment lanes over a fixed worker pool.

Readings are partitioned by a stable hash of the equipment id, so every
reading of one equipment is handled by the same lane worker, strictly in
arrival order, while different lanes run concurrently. One event runs fully
(registry → warm start → persist → rolling state → rules → sink) before the
lane takes the next one.

Errors never stop a lane: permanent errors drop the event, transient ones
are retried with exponential backoff and then dropped as DeliveryFailed.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import zlib
from collections import Counter
from typing import Iterable

from core.diagnostics import Diagnostics
from core.errors import DeliveryFailed, LaneOverflow, PipelineError
from services.alert_sink import AlertSink, AlertStorage
from services.reading import Reading
from services.registry import EquipmentRegistry
from services.rolling_state import RollingStateStore
from services.rule_evaluator import DEFAULT_RULES, AlertRule, evaluate

logger = logging.getLogger("telemetry.coordinator")

_STOP = object()


class DeliveryCoordinator:

    def __init__(
        self,
        registry: EquipmentRegistry,
        store: RollingStateStore,
        sink: AlertSink,
        storage: AlertStorage,
        diagnostics: Diagnostics,
        *,
        rules: Iterable[AlertRule] = DEFAULT_RULES,
        lanes: int = 8,
        lane_capacity: int = 100,
        retry_attempts: int = 3,
        retry_base_delay: float = 0.5,
    ):
        if lanes < 1:
            raise ValueError("lanes must be >= 1")
        self.registry = registry
        self.store = store
        self.sink = sink
        self.storage = storage
        self.diagnostics = diagnostics
        self.rules = tuple(rules)
        self.lane_capacity = lane_capacity
        self.retry_attempts = max(1, retry_attempts)
        self.retry_base_delay = retry_base_delay
        self._queues: list[asyncio.Queue] = [asyncio.Queue() for _ in range(lanes)]
        self._pending: Counter[str] = Counter()
        self._workers: list[asyncio.Task] = []
        self._sequence = itertools.count(1)
        self._accepting = False

    # ------------------------------------------------------------------
    @property
    def accepting(self) -> bool:
        return self._accepting

    def lane_for(self, equipment_id: str) -> int:
        return zlib.crc32(equipment_id.encode("utf-8")) % len(self._queues)

    def lane_depths(self) -> list[int]:
        return [q.qsize() for q in self._queues]

    def pending(self, equipment_id: str) -> int:
        return self._pending[equipment_id]

    # ------------------------------------------------------------------
    async def start(self) -> None:
        self._accepting = True
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"lane-{i}")
            for i in range(len(self._queues))
        ]
        logger.info(
            "DeliveryCoordinator started (lanes=%d, capacity=%d, retries=%d)",
            len(self._queues), self.lane_capacity, self.retry_attempts,
        )

    async def stop(self, timeout: float = 10.0) -> None:
        """Stop accepting, let lanes drain, cancel whatever outlives *timeout*."""
        self._accepting = False
        if not self._workers:
            return
        for queue in self._queues:
            queue.put_nowait(_STOP)
        _, still_running = await asyncio.wait(self._workers, timeout=timeout)
        if still_running:
            logger.warning(
                "DeliveryCoordinator drain timed out, cancelling %d lanes (%d readings pending)",
                len(still_running), sum(self._pending.values()),
            )
            for task in still_running:
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)
        self._workers = []
        logger.info("DeliveryCoordinator stopped")

    async def join(self) -> None:
        """Wait until every queued reading has been handled."""
        await asyncio.gather(*(q.join() for q in self._queues))

    # ------------------------------------------------------------------
    def submit(self, reading: Reading) -> bool:
        """Enqueue without suspending; False when the reading was dropped."""
        equipment_id = reading.equipment_id
        lane = self.lane_for(equipment_id)
        if not self._accepting:
            self.diagnostics.record(
                LaneOverflow("coordinator not accepting", equipment_id=equipment_id, lane=lane),
                stage="submit",
            )
            return False
        if self._pending[equipment_id] >= self.lane_capacity:
            self.diagnostics.record(
                LaneOverflow(
                    f"{self._pending[equipment_id]} readings already pending",
                    equipment_id=equipment_id, lane=lane,
                ),
                stage="submit",
            )
            return False
        self._pending[equipment_id] += 1
        self._queues[lane].put_nowait(reading)
        return True

    async def _worker(self, index: int) -> None:
        queue = self._queues[index]
        while True:
            item = await queue.get()
            try:
                if item is _STOP:
                    return
                await self.process(item)
            finally:
                if item is not _STOP:
                    self._release(item.equipment_id)
                queue.task_done()

    def _release(self, equipment_id: str) -> None:
        self._pending[equipment_id] -= 1
        if self._pending[equipment_id] <= 0:
            del self._pending[equipment_id]

    # ------------------------------------------------------------------
    async def process(self, reading: Reading) -> bool:
        """Run one reading through every stage; True when fully applied."""
        equipment_id = reading.equipment_id
        stage = "registry"
        try:
            profile = await self._retry(stage, reading, self.registry.lookup, equipment_id)

            if not self.store.has(equipment_id):
                stage = "warm_start"
                history = await self._retry(
                    stage, reading,
                    self.storage.recent_readings, equipment_id, self.store.capacity,
                )
                self.store.seed(equipment_id, history)

            stage = "persist"
            await self._retry(stage, reading, self.storage.upsert_reading, reading)

            stage = "state"
            snapshot = self.store.update(equipment_id, reading)

            stage = "evaluate"
            firings = evaluate(reading, snapshot, profile, self.rules)

            stage = "sink"
            await self._retry(
                stage, reading, self.sink.process, equipment_id, firings,
                at=reading.timestamp, evaluation_id=next(self._sequence),
            )
        except PipelineError as exc:
            self.diagnostics.record(
                exc, stage=stage, equipment_id=equipment_id, reading_id=reading.reading_id,
            )
            return False
        except Exception as exc:
            self.diagnostics.incr("StageError")
            logger.error(
                "Pipeline %s stage failed: equipment=%s reading=%s: %s",
                stage, equipment_id, reading.reading_id, exc, exc_info=True,
            )
            return False
        self.diagnostics.incr("processed")
        return True

    async def _retry(self, stage: str, reading: Reading, fn, *args, **kwargs):
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return await fn(*args, **kwargs)
            except PipelineError as exc:
                if not exc.transient:
                    raise
                self.diagnostics.incr(exc.code)
                if attempt == self.retry_attempts:
                    raise DeliveryFailed(
                        f"{stage} failed after {attempt} attempts: {exc}",
                        equipment_id=reading.equipment_id,
                        reading_id=reading.reading_id,
                        timestamp=reading.timestamp.isoformat(),
                        metrics=dict(reading.metrics),
                    ) from exc
                backoff = self.retry_base_delay * 2 ** (attempt - 1)
                logger.warning(
                    "%s %s: %s, retry %d/%d in %.2fs",
                    stage, exc.code, exc, attempt, self.retry_attempts, backoff,
                )
                await asyncio.sleep(backoff)
