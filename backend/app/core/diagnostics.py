"""Diagnostic counters shared by ingress and coordinator."""
from __future__ import annotations

import logging
from collections import Counter

from core.errors import PipelineError

logger = logging.getLogger("telemetry.diagnostics")


class Diagnostics:

    def __init__(self) -> None:
        self._counters: Counter[str] = Counter()

    def record(self, exc: PipelineError, **context) -> None:
        """Count *exc* by its code and log it with the event context."""
        self._counters[exc.code] += 1
        ctx = {**exc.context, **context}
        details = " ".join(f"{k}={v}" for k, v in sorted(ctx.items()) if v is not None)
        logger.warning("%s: %s %s", exc.code, exc, details)

    def incr(self, name: str, amount: int = 1) -> None:
        self._counters[name] += amount

    def count(self, name: str) -> int:
        return self._counters[name]

    def snapshot(self) -> dict[str, int]:
        return dict(self._counters)
