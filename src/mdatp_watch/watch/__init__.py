"""Watch engine — interval planning, fetch cycles, streaming output."""

from .encoder import StreamEncoder
from .planner import QueryWindow, format_odata_time, iter_windows, plan_window
from .source import AlertSource
from .state import StateStorage, WatermarkStore, file_state_storage
from .stream import AlertStream
from .watcher import AlertWatcher, CycleSlot, WatchLimits, WatchSettings

__all__ = [
    "AlertSource",
    "AlertStream",
    "AlertWatcher",
    "CycleSlot",
    "QueryWindow",
    "StateStorage",
    "StreamEncoder",
    "WatchLimits",
    "WatchSettings",
    "WatermarkStore",
    "file_state_storage",
    "format_odata_time",
    "iter_windows",
    "plan_window",
]
