"""
Silence auto-stop timer.

Restarted on every accepted audio chunk; when it expires it calls the same
stop handler a manual stop_recording would. A timeout of 0 disables it.
"""

import asyncio
import logging
from typing import Callable, Optional, Awaitable

logger = logging.getLogger(__name__)


class SilenceTimer:
    """
    Cancellable one-shot countdown backed by an asyncio task.
    """

    def __init__(
        self,
        on_silence_complete: Callable[[], Awaitable[None]],
        timeout_ms: int = 0,
    ):
        """
        Args:
            on_silence_complete: Coroutine function invoked when the countdown completes
            timeout_ms: Silence duration before firing; 0 disables the timer
        """
        self.on_silence_complete = on_silence_complete
        self.timeout_ms = timeout_ms

        self._timer_task: Optional[asyncio.Task] = None
        self._is_running = False

    @property
    def enabled(self) -> bool:
        return self.timeout_ms > 0

    def start(self):
        """
        Start (or restart) the countdown. No-op when disabled.
        """
        if not self.enabled:
            return

        if self._timer_task and not self._timer_task.done():
            self._timer_task.cancel()

        self._is_running = True
        self._timer_task = asyncio.create_task(self._run_timer())
        logger.debug(f"Silence timer started: {self.timeout_ms}ms")

    def cancel(self):
        """Cancel the running countdown, if any."""
        if not self._is_running:
            return

        self._is_running = False

        if self._timer_task and not self._timer_task.done():
            self._timer_task.cancel()
            logger.debug("Silence timer cancelled")

    def is_running(self) -> bool:
        return self._is_running

    async def _run_timer(self):
        try:
            await asyncio.sleep(self.timeout_ms / 1000.0)

            if self._is_running:
                logger.debug("Silence period complete - triggering stop")
                self._is_running = False
                await self.on_silence_complete()

        except asyncio.CancelledError:
            logger.debug("Timer task cancelled")

    def __repr__(self) -> str:
        status = "running" if self._is_running else "idle"
        return f"SilenceTimer(timeout={self.timeout_ms}ms, status={status})"
