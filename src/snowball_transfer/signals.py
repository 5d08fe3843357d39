# src/snowball_transfer/signals.py
"""
Helpers for graceful shutdown of the transfer.

This module provides a context manager to capture OS signals (SIGINT, SIGTERM)
and translate them into an `asyncio.Event`. The pipeline checks the event
between batches, so an interrupted run finishes the archive it is building
instead of leaving half-fetched streams behind.
"""

import asyncio
import logging
import os
import signal
from types import FrameType
from typing import Any, Callable, Dict, Optional, Set

logger: logging.Logger = logging.getLogger(__name__)

_SignalHandler = Callable[[int, Optional[FrameType]], Any]


class GracefulShutdown:
    """
    An async context manager that captures POSIX signals for graceful shutdown.

    The first received signal sets the shutdown event: the current batch is
    completed and no further batch is started. A second signal exits
    immediately. Previous signal handlers are restored on exit.
    """

    def __init__(self) -> None:
        """Initialize the shutdown manager."""
        self._event: asyncio.Event = asyncio.Event()
        self._old_handlers: Dict[signal.Signals, _SignalHandler] = {}

    async def __aenter__(self) -> asyncio.Event:
        """
        Registers signal handlers and returns the shutdown event.

        Returns:
            asyncio.Event: The event set when a handled signal is received.
        """
        loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
        signals_to_handle: Set[signal.Signals] = {
            signal.SIGINT,
            signal.SIGTERM,
        }

        def _handler(sig: int, _: Optional[FrameType]) -> None:
            if self._event.is_set():
                logger.critical(
                    "Received second shutdown signal. Abandoning the current batch."
                )
                os._exit(1)
            logger.warning(
                f"Received shutdown signal: {signal.strsignal(sig)}. "
                "Finishing the current batch before exiting..."
            )
            loop.call_soon_threadsafe(self._event.set)

        for sig in signals_to_handle:
            try:
                # signal.signal must be called from the main thread
                self._old_handlers[sig] = signal.signal(sig, _handler)
            except (ValueError, OSError) as e:
                logger.warning(f"Could not set handler for {sig.name}: {e}")

        return self._event

    async def __aexit__(self, *args: Any) -> None:
        """Restores original signal handlers."""
        for sig, handler in self._old_handlers.items():
            try:
                signal.signal(sig, handler)
            except (ValueError, OSError) as e:
                logger.warning(f"Could not restore handler for {sig.name}: {e}")
        self._old_handlers.clear()
