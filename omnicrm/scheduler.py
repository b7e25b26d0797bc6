"""
Single-process analysis scheduler.

A cooperative queue on the asyncio event loop, not a thread pool:

- at most one analysis per conversation is in flight at any time;
- at most `max_concurrency` analyses run at once;
- scheduling a conversation that is already running is coalesced into one
  follow-up run after the current one finishes, however many times it is
  requested.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from omnicrm.metrics import analysis_in_flight, record_analysis_outcome

logger = logging.getLogger(__name__)

Worker = Callable[[str], Awaitable[None]]


class AnalysisScheduler:
    def __init__(self, worker: Worker, max_concurrency: int = 1):
        self.worker = worker
        self.max_concurrency = max(1, max_concurrency)
        self.pending: set[str] = set()
        self.running: set[str] = set()
        # Conversations re-requested while running; re-queued when they finish
        self.followups: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self._idle: Optional[asyncio.Event] = None

    @property
    def idle(self) -> bool:
        return not (self.pending or self.running or self.followups)

    def schedule(self, conversation_id: str) -> None:
        """
        Request an analysis pass for a conversation.

        Must be called from the event loop thread. The drain runs after the
        caller yields, never inline.
        """
        if conversation_id in self.running:
            logger.debug("Analysis already running, coalescing", extra={"conversation_id": conversation_id})
            self.followups.add(conversation_id)
            return

        self.pending.add(conversation_id)
        self._idle_event().clear()
        asyncio.get_running_loop().call_soon(self._drain)

    def _drain(self) -> None:
        loop = asyncio.get_running_loop()
        while self.pending and len(self.running) < self.max_concurrency:
            conversation_id = self.pending.pop()
            self.running.add(conversation_id)
            analysis_in_flight.inc()

            task = loop.create_task(self._run(conversation_id))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, conversation_id: str) -> None:
        try:
            await self.worker(conversation_id)
        except Exception:
            logger.exception("Conversation analysis failed", extra={"conversation_id": conversation_id})
            record_analysis_outcome("failed")
        finally:
            self.running.discard(conversation_id)
            analysis_in_flight.dec()

            if conversation_id in self.followups:
                self.followups.discard(conversation_id)
                self.pending.add(conversation_id)

            loop = asyncio.get_running_loop()
            if self.pending:
                loop.call_soon(self._drain)
            elif self.idle:
                self._idle_event().set()

    def _idle_event(self) -> asyncio.Event:
        if self._idle is None:
            self._idle = asyncio.Event()
            if self.idle:
                self._idle.set()
        return self._idle

    async def join(self) -> None:
        """Wait until nothing is pending or running. In-flight runs are never cancelled."""
        while not self.idle:
            await self._idle_event().wait()
