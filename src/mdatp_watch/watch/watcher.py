"""Alert watcher — ticker-driven fetch cycles feeding a streaming encoder.

Lifecycle of ``AlertWatcher.run()``:

    validate settings -> load watermark -> start encoder
      -> first fetch cycle right away
      -> every tick: start a fetch cycle unless one is still running
    stop() or encoder failure
      -> cancel the running cycle -> close the stream -> encoder drains
      -> save watermark

A fetch cycle walks query windows from the watermark up to its trigger
time, pushing each window's alerts onto the bounded stream and only then
advancing the watermark to the window's end.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from ..exceptions import ConfigError
from ..sinks import OutputSink
from .encoder import StreamEncoder
from .planner import DEFAULT_FILTER_FIELD, DEFAULT_MAX_LOOK_BEHIND, plan_window
from .source import AlertSource
from .state import StateStorage, WatermarkStore
from .stream import DEFAULT_BUFFER_SIZE, AlertStream

logger = logging.getLogger("mdatp-watch")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _log_cycle_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Fetch cycle crashed: {exc!r}", exc_info=exc)


@dataclass(frozen=True)
class WatchLimits:
    """Accepted ranges for the tunable intervals."""

    min_ticker_interval: timedelta = timedelta(seconds=3)
    max_ticker_interval: timedelta = timedelta(hours=24)
    min_interval: timedelta = timedelta(seconds=1)
    max_interval: timedelta = timedelta(hours=24)


@dataclass(frozen=True)
class WatchSettings:
    ticker_interval: timedelta = timedelta(seconds=5)
    max_interval: timedelta = timedelta(hours=24)
    max_look_behind: timedelta = DEFAULT_MAX_LOOK_BEHIND
    buffer_size: int = DEFAULT_BUFFER_SIZE
    indent_output: bool = False
    filter_field: str = DEFAULT_FILTER_FIELD
    limits: WatchLimits = field(default_factory=WatchLimits)

    def validate(self) -> None:
        """Raise ConfigError when a value is outside its accepted range."""
        lim = self.limits
        if not lim.min_ticker_interval <= self.ticker_interval <= lim.max_ticker_interval:
            raise ConfigError(
                f"ticker interval must be between {lim.min_ticker_interval} and "
                f"{lim.max_ticker_interval}, got {self.ticker_interval}"
            )
        if not lim.min_interval <= self.max_interval <= lim.max_interval:
            raise ConfigError(
                f"max interval must be between {lim.min_interval} and "
                f"{lim.max_interval}, got {self.max_interval}"
            )
        if self.max_look_behind <= timedelta(0):
            raise ConfigError(f"max look-behind must be positive, got {self.max_look_behind}")
        if self.buffer_size < 1:
            raise ConfigError(f"buffer size must be >= 1, got {self.buffer_size}")
        if not self.filter_field:
            raise ConfigError("filter field must not be empty")


class CycleSlot:
    """Single-slot admission guard: at most one fetch cycle at a time."""

    def __init__(self) -> None:
        self._busy = False

    def try_acquire(self) -> bool:
        # No await between test and set, so this is atomic on the event loop.
        if self._busy:
            return False
        self._busy = True
        return True

    def release(self) -> None:
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy


class AlertWatcher:
    """Polls an alert source on a ticker and streams new alerts to a sink.

    Usage:
        watcher = AlertWatcher(client, sink, settings, state_storage=storage)
        task = asyncio.create_task(watcher.run())
        ...
        watcher.stop()
        await task
    """

    def __init__(
        self,
        source: AlertSource,
        sink: OutputSink,
        settings: WatchSettings | None = None,
        watermark: WatermarkStore | None = None,
        state_storage: StateStorage | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._source = source
        self._sink = sink
        self._settings = settings or WatchSettings()
        self.watermark = watermark or WatermarkStore()
        self._storage = state_storage
        self._clock = clock
        self._slot = CycleSlot()
        self._stop_event = asyncio.Event()
        self._stream: AlertStream | None = None
        self._cycle_task: asyncio.Task | None = None
        self._started = False
        self.cycles_started = 0

    @property
    def busy(self) -> bool:
        return self._slot.busy

    def stop(self) -> None:
        """Request a graceful shutdown. Safe to call more than once."""
        self._stop_event.set()

    async def run(self) -> None:
        """Watch until ``stop()`` is called or the output fails.

        Raises ConfigError for invalid settings (before anything starts)
        and EncoderError when the output sink breaks.
        """
        if self._started:
            raise RuntimeError("AlertWatcher.run() can only be called once")
        self._started = True
        self._settings.validate()

        logger.info("Alert watcher starting")
        if self._storage is not None:
            self.watermark.load(self._storage)

        self._stream = AlertStream(self._settings.buffer_size)
        encoder = StreamEncoder(self._sink, indent=self._settings.indent_output)
        encoder_task = asyncio.create_task(
            encoder.run(self._stream), name="mdatp-watch-encoder"
        )
        try:
            # First query right away instead of one tick from now
            self._try_start_cycle(self._clock())
            logger.info(
                f"Alert watcher started (ticker={self._settings.ticker_interval}, "
                f"max_interval={self._settings.max_interval})"
            )
            await self._tick_loop(encoder_task)
        finally:
            try:
                await self._shutdown(encoder_task)
            finally:
                if self._storage is not None:
                    self.watermark.save(self._storage)
                logger.info(f"Alert watcher stopped ({encoder.written} alerts written)")

    async def _tick_loop(self, encoder_task: asyncio.Task) -> None:
        loop = asyncio.get_running_loop()
        interval = self._settings.ticker_interval.total_seconds()
        stop_wait = asyncio.create_task(self._stop_event.wait())
        next_tick = loop.time() + interval
        try:
            while True:
                timeout = max(0.0, next_tick - loop.time())
                done, _ = await asyncio.wait(
                    {stop_wait, encoder_task},
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if stop_wait in done:
                    logger.info("Stop requested, shutting down")
                    return
                if encoder_task in done:
                    logger.error("Output encoder stopped, shutting down")
                    return

                next_tick += interval
                if next_tick <= loop.time():
                    # Missed ticks are dropped, not replayed
                    next_tick = loop.time() + interval
                self._on_tick(self._clock())
        finally:
            stop_wait.cancel()

    def _on_tick(self, now: datetime) -> None:
        logger.debug(f"Tick at {now.isoformat()}")
        if not self._try_start_cycle(now):
            logger.debug("Fetch cycle still running, tick dropped")

    def _try_start_cycle(self, trigger: datetime) -> bool:
        if not self._slot.try_acquire():
            return False
        self.cycles_started += 1
        self._cycle_task = asyncio.create_task(
            self._fetch_cycle(trigger), name=f"mdatp-watch-cycle-{self.cycles_started}"
        )
        self._cycle_task.add_done_callback(_log_cycle_failure)
        return True

    async def _fetch_cycle(self, trigger: datetime) -> None:
        settings = self._settings
        assert self._stream is not None
        try:
            while True:
                previous = self.watermark.get()
                window = plan_window(
                    previous, trigger, settings.max_interval, settings.max_look_behind
                )
                if window is None:
                    logger.debug("Caught up, fetch cycle done")
                    return
                if previous is not None and window.start > previous:
                    logger.warning(
                        f"lastFetchTime {previous.isoformat()} is older than the "
                        f"look-behind limit, skipping to {window.start.isoformat()}"
                    )

                query = window.filter_expression(settings.filter_field)
                logger.debug(f"OData filter query: {query}")
                try:
                    alerts = await self._source.list_alerts(query)
                except Exception as e:
                    logger.error(f"Alert query failed, will retry next tick: {e}")
                    return

                logger.debug(f"Query returned {len(alerts)} alerts")
                for alert in alerts:
                    await self._stream.put(alert)
                # Commit only once the whole window is queued for output
                self.watermark.set(window.end)
        finally:
            self._slot.release()

    async def _shutdown(self, encoder_task: asyncio.Task) -> None:
        task = self._cycle_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        if not encoder_task.done() and self._stream is not None:
            # close() waits for room in a full stream; the encoder may die first
            close_task = asyncio.create_task(self._stream.close())
            await asyncio.wait(
                {close_task, encoder_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if not close_task.done():
                close_task.cancel()
                await asyncio.gather(close_task, return_exceptions=True)
        await encoder_task
