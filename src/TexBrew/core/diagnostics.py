"""Structured diagnostics threaded through each conversion stage.

Stages report through a `Diagnostics` sink instead of only writing to the
process-wide logger, so callers (and tests) can inspect what happened to a
single texture from its `ConversionResult`.

A sink created inside a running event loop delivers its callback on that
loop's thread, even for events emitted from executor workers.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional


@dataclass
class DiagnosticEvent:
    """One stage-tagged message emitted during a conversion."""

    stage: str
    message: str
    level: int = logging.INFO
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def level_name(self) -> str:
        return logging.getLevelName(self.level)


DiagnosticCallback = Callable[[DiagnosticEvent], None]


class Diagnostics:
    """Collect events, mirror them to stage loggers, forward to a callback."""

    def __init__(self, callback: Optional[DiagnosticCallback] = None,
                 logger_prefix: str = "texture_conversion"):
        self.callback = callback
        self.events: List[DiagnosticEvent] = []
        self._logger_prefix = logger_prefix
        self._lock = threading.Lock()
        try:
            self._loop: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None
        self._loop_thread = threading.get_ident()

    def emit(self, stage: str, message: str, level: int = logging.INFO,
             exc_info=None, **data) -> DiagnosticEvent:
        event = DiagnosticEvent(stage=stage, message=message, level=level, data=data)
        with self._lock:
            self.events.append(event)
        logging.getLogger(f"{self._logger_prefix}.{stage}").log(
            level, message, exc_info=exc_info
        )
        if self.callback is not None:
            if self._loop is not None and threading.get_ident() != self._loop_thread:
                self._loop.call_soon_threadsafe(self.callback, event)
            else:
                self.callback(event)
        return event

    def info(self, stage: str, message: str, **data) -> DiagnosticEvent:
        return self.emit(stage, message, logging.INFO, **data)

    def warning(self, stage: str, message: str, **data) -> DiagnosticEvent:
        return self.emit(stage, message, logging.WARNING, **data)

    def error(self, stage: str, message: str, exc_info=None, **data) -> DiagnosticEvent:
        return self.emit(stage, message, logging.ERROR, exc_info=exc_info, **data)

    def for_stage(self, stage: str) -> List[DiagnosticEvent]:
        return [e for e in self.events if e.stage == stage]
