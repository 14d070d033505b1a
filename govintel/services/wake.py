from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any

import asyncpg  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WakeEvent:
    job_id: str
    source: str | None
    run_type: str | None
    priority: int | None


def build_wake_payload(*, job_id: str, source: str, run_type: str, priority: int) -> str:
    return json.dumps({"job_id": job_id, "source": source, "run_type": run_type, "priority": priority})


def parse_wake_payload(payload: str | None) -> WakeEvent | None:
    if not payload:
        return None
    try:
        decoded = json.loads(payload)
    except json.JSONDecodeError:
        return None
    if not isinstance(decoded, dict) or not isinstance(decoded.get("job_id"), str):
        return None
    priority = decoded.get("priority")
    return WakeEvent(
        job_id=decoded["job_id"],
        source=decoded.get("source") if isinstance(decoded.get("source"), str) else None,
        run_type=decoded.get("run_type") if isinstance(decoded.get("run_type"), str) else None,
        priority=priority if isinstance(priority, int) and not isinstance(priority, bool) else None,
    )


class JobWakeListener:
    """LISTENs on the wake channel; polling remains the correctness fallback."""

    def __init__(self, database_url: str | None, channel: str) -> None:
        self.database_url = database_url
        self.channel = channel
        self._event = asyncio.Event()
        self._conn: Any | None = None

    @property
    def connected(self) -> bool:
        return self._conn is not None and not self._conn.is_closed()

    async def ensure_started(self) -> None:
        if self.connected or not self.database_url:
            return
        try:
            self._conn = await asyncpg.connect(dsn=self.database_url)
            await self._conn.add_listener(self.channel, self._on_notify)
            logger.info("listening for wake notifications channel=%s", self.channel)
        except (OSError, asyncpg.PostgresError) as exc:
            self._conn = None
            logger.warning("wake listener unavailable, polling only: %s", exc)

    async def wait(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False
        finally:
            self._event.clear()

    def notify_local(self) -> None:
        self._event.set()

    async def stop(self) -> None:
        if self._conn is None:
            return
        try:
            if not self._conn.is_closed():
                await self._conn.remove_listener(self.channel, self._on_notify)
                await self._conn.close()
        finally:
            self._conn = None

    def _on_notify(self, _connection: Any, _pid: int, _channel: str, payload: str) -> None:
        event = parse_wake_payload(payload)
        if event is not None:
            logger.debug(
                "wake notification job_id=%s source=%s run_type=%s priority=%s",
                event.job_id,
                event.source,
                event.run_type,
                event.priority,
            )
        self._event.set()
