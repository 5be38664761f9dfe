"""
Progress event stream.

Each stage emits one ProgressEvent when it starts. Subscribers are plain
callables or coroutine functions; a failing subscriber is logged and never
affects the pipeline.
"""

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, List, Union

from ..core.constants import STAGE_PROGRESS_MESSAGES
from ..models import ProgressEvent

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], Union[None, Awaitable[None]]]


class ProgressStream:
    """Fan-out of stage-start events to subscribers."""

    def __init__(self):
        self._subscribers: List[ProgressCallback] = []
        self.history: List[ProgressEvent] = []

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        """Register a callback. Returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def emit(self, stage: str, message: str = "") -> ProgressEvent:
        event = ProgressEvent(stage=stage, message=message or STAGE_PROGRESS_MESSAGES.get(stage, f"Running {stage}..."))
        self.history.append(event)
        for callback in list(self._subscribers):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Progress subscriber {getattr(callback, '__name__', callback)!r} failed: {e}")
        return event

    def clear(self) -> None:
        self.history.clear()
