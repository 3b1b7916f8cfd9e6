import asyncio
from datetime import datetime
from typing import Awaitable, Iterable, Optional, TypeVar

from .errors import ErrorKind, PipelineError

T = TypeVar("T")


class CancellationToken:
    """
    Cooperative cancellation flag propagated into every remote call of a job.
    `guard` races an awaitable against the token so an in-flight request is
    aborted as soon as the token fires.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None
        self.cancelled_at: Optional[datetime] = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[str] = None) -> None:
        if self._event.is_set():
            return
        self.reason = reason or "Operation cancelled"
        self.cancelled_at = datetime.now()
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise PipelineError(ErrorKind.CANCELLED, self.reason or "Operation cancelled", code="cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        if self.is_cancelled and asyncio.iscoroutine(awaitable):
            awaitable.close()
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()
        if work.done():
            return work.result()
        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        raise PipelineError(ErrorKind.CANCELLED, self.reason or "Operation cancelled", code="cancelled")

    @classmethod
    def with_timeout(cls, seconds: float) -> "CancellationToken":
        token = cls()
        asyncio.get_running_loop().call_later(seconds, token.cancel, "Operation timed out")
        return token

    @classmethod
    def any_of(cls, tokens: Iterable["CancellationToken"]) -> "CancellationToken":
        combined = cls()
        for t in tokens:
            if t.is_cancelled:
                combined.cancel(t.reason)
                break

            async def _forward(source: "CancellationToken" = t) -> None:
                await source.wait()
                combined.cancel(source.reason)

            asyncio.ensure_future(_forward())
        return combined


class CancellationTokenSource:
    def __init__(self):
        self.token = CancellationToken()

    @property
    def is_cancelled(self) -> bool:
        return self.token.is_cancelled

    def cancel(self, reason: Optional[str] = None) -> None:
        self.token.cancel(reason)

    def reset(self) -> None:
        self.token = CancellationToken()

    def cancel_and_reset(self, reason: Optional[str] = None) -> None:
        self.token.cancel(reason)
        self.token = CancellationToken()
