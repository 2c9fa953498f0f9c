"""Block polling and periodic sweep triggers around the engine."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from .config import OracleConfig
from .engine import ReconcileResult, ReconciliationEngine
from .errors import OracleError
from .sources import EventSource

logger = logging.getLogger(__name__)


class OracleRunner:
    """Drives the engine from new blocks and a timer.

    Polling and sweeping share one overlap guard: a trigger that finds a run
    in progress is skipped rather than queued.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        event_source: EventSource,
        config: Optional[OracleConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.engine = engine
        self.event_source = event_source
        self.config = config or engine.config
        self.clock = clock
        self.last_processed_block: Optional[int] = None
        self._busy = threading.Lock()

    def poll_once(self) -> Optional[list[ReconcileResult]]:
        """Process blocks after the cursor. Returns None when skipped by the guard."""
        if not self._busy.acquire(blocking=False):
            logger.warning("Skipping poll: another run is in progress")
            return None
        try:
            head = self.event_source.head_block()
            if self.last_processed_block is None:
                self.last_processed_block = max(0, head - self.config.blocks_to_look_back)
            if head <= self.last_processed_block:
                logger.debug("No new blocks (head %d)", head)
                return []

            from_block = self.last_processed_block + 1
            logger.info("Polling blocks %d to %d", from_block, head)
            events = self.event_source.fetch_all_events(from_block, head)
            self.last_processed_block = head

            if not events:
                return []
            logger.info("Found %d new events", len(events))
            return self.engine.on_events(events)
        finally:
            self._busy.release()

    def refresh_all(self) -> Optional[list[ReconcileResult]]:
        """Sweep every active account. Returns None when skipped by the guard."""
        if not self._busy.acquire(blocking=False):
            logger.warning("Skipping sweep: another run is in progress")
            return None
        try:
            return self.engine.refresh()
        finally:
            self._busy.release()

    def run_forever(self, stop_event: threading.Event) -> None:
        """Poll every ``poll_interval`` and sweep every ``sweep_interval`` until stopped.

        A sweep runs immediately on start.
        """
        logger.info(
            "Oracle running: poll every %.1fs, sweep every %.1fs",
            self.config.poll_interval, self.config.sweep_interval,
        )
        next_sweep = self.clock()
        while not stop_event.is_set():
            if self.clock() >= next_sweep:
                next_sweep = self.clock() + self.config.sweep_interval
                try:
                    self.refresh_all()
                except OracleError as exc:
                    logger.warning("Sweep failed: %s", exc)
            try:
                self.poll_once()
            except OracleError as exc:
                logger.warning("Poll failed: %s", exc)
            stop_event.wait(self.config.poll_interval)
        logger.info("Oracle stopped at block %s", self.last_processed_block)
