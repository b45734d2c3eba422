"""Push channel for job status changes, backed by Postgres LISTEN/NOTIFY."""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional, Set

import asyncpg

from studio_jobs.store import JOB_UPDATES_CHANNEL

_DISCONNECTED = object()


class PostgresJobNotifier:
    """Yields ``{"job_id", "status"}`` events for a single job.

    One notifier serves a whole process. It keeps a single dedicated LISTEN
    connection, opened on the first ``watch`` and outside any pool, and
    routes each notification to the queues of the watchers of that job.
    Closing or cancelling a ``watch`` iterator unregisters its queue.
    """

    def __init__(
        self,
        dsn: str,
        channel: str = JOB_UPDATES_CHANNEL,
        logger: Optional[logging.Logger] = None,
    ):
        self.dsn = dsn
        self.channel = channel
        self.logger = logger or logging.getLogger(__name__)
        self._conn: Optional[asyncpg.Connection] = None
        self._connect_lock = asyncio.Lock()
        self._watchers: Dict[str, Set[asyncio.Queue]] = {}

    @property
    def watcher_count(self) -> int:
        return sum(len(queues) for queues in self._watchers.values())

    async def _ensure_listening(self) -> None:
        async with self._connect_lock:
            if self._conn is not None and not self._conn.is_closed():
                return
            conn = await asyncpg.connect(self.dsn)
            conn.add_termination_listener(self._on_terminate)
            await conn.add_listener(self.channel, self._on_notify)
            self._conn = conn
            self.logger.info(f"Listening for job updates on {self.channel}")

    def _on_notify(self, connection, pid, channel, payload) -> None:
        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            self.logger.warning(f"Ignoring malformed notification on {channel}: {payload!r}")
            return
        for queue in self._watchers.get(event.get("job_id"), ()):
            queue.put_nowait(event)

    def _on_terminate(self, connection) -> None:
        if connection is self._conn:
            self._conn = None
        # Watchers fall back to polling; the next watch reconnects.
        for queues in self._watchers.values():
            for queue in queues:
                queue.put_nowait(_DISCONNECTED)

    async def watch(self, job_id: Any) -> AsyncIterator[Dict[str, Any]]:
        job_id = str(job_id)
        queue: asyncio.Queue = asyncio.Queue()
        self._watchers.setdefault(job_id, set()).add(queue)
        try:
            await self._ensure_listening()
            while True:
                event = await queue.get()
                if event is _DISCONNECTED:
                    raise ConnectionError(f"Notification connection for job {job_id} closed")
                yield event
        finally:
            queues = self._watchers.get(job_id)
            if queues is not None:
                queues.discard(queue)
                if not queues:
                    del self._watchers[job_id]

    async def close(self) -> None:
        """Close the LISTEN connection. Active watchers see a disconnect."""
        async with self._connect_lock:
            conn, self._conn = self._conn, None
        if conn is not None and not conn.is_closed():
            await conn.remove_listener(self.channel, self._on_notify)
            await conn.close()
