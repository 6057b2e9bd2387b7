import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CANCEL_REASON = "AbortError: Request was cancelled by user"


class OperationCancelled(Exception):
    pass


class CancelToken:
    """Cancellation flag shared between a request and the work it started."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = DEFAULT_CANCEL_REASON) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled(self.reason or DEFAULT_CANCEL_REASON)


async def run_cancellable(awaitable: Awaitable[T], token: Optional[CancelToken]) -> T:
    """Await ``awaitable`` unless ``token`` fires first, in which case it is cancelled."""
    if token is None:
        return await awaitable
    if token.cancelled:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        token.raise_if_cancelled()

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as exc:
        log.debug("Cancelled operation finished with %s: %s", type(exc).__name__, exc)
    raise OperationCancelled(token.reason or DEFAULT_CANCEL_REASON)


async def watch_disconnect(request, token: CancelToken, interval: float = 0.5) -> None:
    """Cancel ``token`` once the HTTP client behind ``request`` goes away."""
    while not token.cancelled:
        if await request.is_disconnected():
            log.info("Client disconnected from %s", request.url.path)
            token.cancel()
            return
        await asyncio.sleep(interval)
