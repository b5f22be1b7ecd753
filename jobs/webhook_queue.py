"""
In-process retry queue for gateway webhooks.

The webhook endpoint acknowledges as soon as the payload is accepted; the
actual verification runs here as a background task with its own
exponential backoff. A payment left pending by exhausted retries is still
recoverable through the poll and callback paths, since those re-verify
against the gateway.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from utils.errors import AppError, UpstreamError

logger = logging.getLogger(__name__)

Handler = Callable[[str, Optional[str]], Awaitable[Any]]
FailureHandler = Callable[[str, str], Awaitable[Any]]


class WebhookQueue:

    def __init__(
        self,
        handler: Handler,
        on_failure: FailureHandler,
        max_attempts: int = 3,
        retry_delay: float = 5.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.handler = handler
        self.on_failure = on_failure
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._sleep = sleep
        # tx_ref -> in-flight task; duplicate deliveries collapse onto it
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def enqueue(self, tx_ref: str, user_id: Optional[str] = None) -> bool:
        """
        Schedule processing of `tx_ref`.

        Returns:
            False if the same reference is already being processed
        """
        if tx_ref in self._tasks:
            logger.info(f"Webhook for tx_ref={tx_ref} already in flight; duplicate ignored")
            return False
        task = asyncio.create_task(self._run(tx_ref, user_id), name=f"webhook:{tx_ref}")
        self._tasks[tx_ref] = task
        task.add_done_callback(lambda _: self._tasks.pop(tx_ref, None))
        return True

    async def _run(self, tx_ref: str, user_id: Optional[str]) -> None:
        for attempt in range(1, self.max_attempts + 1):
            try:
                await self.handler(tx_ref, user_id)
                return
            except Exception as e:
                retryable = isinstance(e, UpstreamError) or not isinstance(e, AppError)
                logger.warning(
                    f"Webhook processing attempt {attempt}/{self.max_attempts} failed for tx_ref={tx_ref}: {e!r}"
                )
                if retryable and attempt < self.max_attempts:
                    await self._sleep(self.retry_delay * (2 ** (attempt - 1)))
                    continue
                logger.error(f"Giving up on webhook for tx_ref={tx_ref}: {e}", exc_info=True)
                try:
                    await self.on_failure(tx_ref, str(e))
                except Exception:
                    logger.exception(f"Could not record webhook failure for tx_ref={tx_ref}")
                return

    async def drain(self) -> None:
        """Wait for every in-flight task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self, timeout: float = 10.0) -> None:
        if not self._tasks:
            return
        logger.info(f"Waiting for {len(self._tasks)} webhook task(s) to finish")
        try:
            await asyncio.wait_for(self.drain(), timeout=timeout)
        except asyncio.TimeoutError:
            for task in list(self._tasks.values()):
                task.cancel()
            logger.warning("Webhook tasks cancelled at shutdown; affected payments stay pending")
