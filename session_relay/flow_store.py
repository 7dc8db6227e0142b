"""Keyed, TTL-expiring store of in-progress setup dialogs."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Optional

from .models import ConversationFlow

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 600
DEFAULT_SWEEP_INTERVAL_SECONDS = 60


class ConversationFlowStore:
    """
    At most one ConversationFlow per thread.

    Keys are thread identity only. The owner id passed alongside is accepted
    for symmetry with the callers but ignored: everyone in a thread shares the
    one in-flight dialog.

    Step transitions hold ``locked(thread_key)``; the sweeper never removes a
    flow whose key is locked, so an expiry cannot race a transition.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.sweep_interval_seconds = sweep_interval_seconds
        self._flows: dict[str, ConversationFlow] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        # Holders plus waiters per thread; a lock is dropped when this reaches zero
        self._lock_users: dict[str, int] = {}
        self._sweep_task: Optional[asyncio.Task] = None
        self._running = False

    @classmethod
    def from_config(cls, config: Optional[dict] = None) -> "ConversationFlowStore":
        flows_config = (config or {}).get("flows", {})
        return cls(
            ttl_seconds=flows_config.get("ttl_seconds", DEFAULT_TTL_SECONDS),
            sweep_interval_seconds=flows_config.get("sweep_interval_seconds", DEFAULT_SWEEP_INTERVAL_SECONDS),
        )

    def get(self, thread_key: str, owner_ref: Optional[str] = None) -> Optional[ConversationFlow]:
        return self._flows.get(thread_key)

    def set(self, thread_key: str, flow: ConversationFlow, owner_ref: Optional[str] = None):
        """Store ``flow`` for the thread, replacing any previous one outright."""
        previous = self._flows.get(thread_key)
        if previous is not None and previous is not flow:
            logger.info(f"Replacing {previous.kind.value} flow on thread {thread_key} with {flow.kind.value}")
        self._flows[thread_key] = flow

    def clear(self, thread_key: str, owner_ref: Optional[str] = None) -> bool:
        return self._flows.pop(thread_key, None) is not None

    def list_flows(self) -> list[ConversationFlow]:
        return list(self._flows.values())

    def __len__(self) -> int:
        return len(self._flows)

    def __contains__(self, thread_key: str) -> bool:
        return thread_key in self._flows

    @asynccontextmanager
    async def locked(self, thread_key: str):
        """Serialize operations on one thread's flow."""
        lock = self._locks.setdefault(thread_key, asyncio.Lock())
        self._lock_users[thread_key] = self._lock_users.get(thread_key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[thread_key] -= 1
            if not self._lock_users[thread_key]:
                del self._lock_users[thread_key]
                del self._locks[thread_key]

    def is_expired(self, flow: ConversationFlow, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now()
        return now - (flow.last_activity or flow.created_at) > self.ttl

    def sweep_expired(self, now: Optional[datetime] = None) -> list[str]:
        """Remove every expired flow regardless of step. Returns removed thread keys."""
        now = now or datetime.now()
        removed = []
        for thread_key, flow in list(self._flows.items()):
            if thread_key in self._lock_users:
                continue
            if self.is_expired(flow, now):
                self.clear(thread_key)
                removed.append(thread_key)
                logger.info(f"Expired {flow.kind.value} flow on thread {thread_key} at step {flow.step.value}")
        return removed

    async def start(self):
        """Start the periodic sweeper."""
        self._running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(f"Flow sweeper started (ttl {self.ttl.total_seconds():.0f}s)")

    async def stop(self):
        self._running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    async def _sweep_loop(self):
        while self._running:
            try:
                await asyncio.sleep(self.sweep_interval_seconds)
                self.sweep_expired()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error sweeping expired flows: {e}", exc_info=True)
