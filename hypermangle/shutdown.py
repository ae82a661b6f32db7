"""Process-wide shutdown signal."""

import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class ShutdownToken:
    """One-way signal telling the control listener to stop accepting.

    Created once at service startup. ``retire()`` may be called any number of
    times from the event loop thread; only the first call has an effect and
    the token can never be reset.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def retired(self) -> bool:
        """True once the token has been retired."""
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        """Why the token was retired, if it has been."""
        return self._reason

    def retire(self, reason: str = "shutdown requested") -> None:
        """Retire the token, waking every waiter."""
        if self._event.is_set():
            return
        self._reason = reason
        logger.info(f"Shutdown token retired: {reason}")
        self._event.set()

    async def wait(self) -> None:
        """Wait until the token is retired."""
        await self._event.wait()
