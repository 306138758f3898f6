"""Periodic live-data polling.

At most one `MonitoringSession` is active. Each tick calls the session's
`read_live_data` (which already falls back to simulation when the adapter is
not ready) and publishes the sample as a ``liveData`` DataEvent.
"""
import asyncio
from typing import Awaitable, Callable, Optional

from . import events
from .logger import get_logger
from .models import DataEvent, LiveTelemetrySample, MonitoringSession

logger = get_logger(__name__)


class TelemetryPoller:
    def __init__(self, read_sample: Callable[[], Awaitable[LiveTelemetrySample]], bus: events.EventBus):
        self._read_sample = read_sample
        self.bus = bus
        self.current: Optional[MonitoringSession] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self.current is not None and self.current.active

    def start(self, interval_ms: int) -> MonitoringSession:
        """Replace any running session with a new one ticking every `interval_ms`."""
        if interval_ms <= 0:
            raise ValueError('interval_ms must be positive')
        self.stop_monitoring()
        session = MonitoringSession(interval_ms=int(interval_ms))
        self.current = session
        self._task = asyncio.get_running_loop().create_task(self._run(session))
        logger.info('Monitoring started (every %dms)', session.interval_ms)
        return session

    def stop_monitoring(self) -> bool:
        """Deactivate and cancel the running session. Safe to call when idle."""
        session, task = self.current, self._task
        self.current, self._task = None, None
        if session is None:
            return False
        session.active = False
        if task is not None and not task.done():
            task.cancel()
        logger.info('Monitoring stopped after %d ticks', session.ticks)
        return True

    async def stop(self) -> None:
        """Like `stop_monitoring`, but also wait for the task to finish unwinding."""
        task = self._task
        self.stop_monitoring()
        if task is not None:
            await asyncio.wait([task])

    async def _run(self, session: MonitoringSession) -> None:
        delay = session.interval_ms / 1000.0
        while session.active:
            await asyncio.sleep(delay)
            if not session.active:
                break
            await self._tick(session)

    async def _tick(self, session: MonitoringSession) -> None:
        try:
            sample = await self._read_sample()
        except Exception:
            logger.exception('Live data tick failed; continuing')
            return
        # a stop that landed while the read was in flight wins
        if not session.active:
            return
        session.ticks += 1
        self.bus.publish(events.DATA, DataEvent(type='liveData', data=sample, source=sample.source))
