"""Per-symbol fallback polling timer.

One poller runs one fetch callable at a fixed interval until cancelled. The
first round runs immediately. The callable does the fetch-and-publish work
and decides itself whether a round should be skipped.
"""

import asyncio
from collections.abc import Awaitable, Callable

from tickersync.logging import get_logger, log_context

logger = get_logger(__name__)


class PricePoller:
    """Background polling loop for one symbol and one source."""

    def __init__(
        self,
        symbol: str,
        poll: Callable[[], Awaitable[None]],
        interval: float,
        source: str,
    ) -> None:
        self.symbol = symbol
        self.source = source
        self._poll = poll
        self._interval = interval
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            logger.warning("price_poller_already_running", symbol=self.symbol, source=self.source)
            return
        self._task = asyncio.create_task(self._poll_loop())
        logger.info("price_poller_started", symbol=self.symbol, source=self.source, interval=self._interval)

    def cancel(self) -> None:
        """Cancel synchronously; no further round will start."""
        if self._task is not None:
            self._task.cancel()
            logger.info("price_poller_stopped", symbol=self.symbol, source=self.source)

    async def stop(self) -> None:
        self.cancel()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _poll_loop(self) -> None:
        with log_context(symbol=self.symbol, source=self.source):
            while True:
                try:
                    await self._poll()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.warning("price_poll_error", exc_info=True)
                await asyncio.sleep(self._interval)
