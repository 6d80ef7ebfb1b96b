import asyncio

from bunkd.services.errors import OperationCancelled


class CancelToken:
    """
    Advisory cancellation handed to long-running operations by the owning context.

    Cancelling does not abort an HTTP call already in flight; it makes the
    operation drop that call's outcome and stop before the next step.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("Operation cancelled by its owner")

    async def sleep(self, seconds: float) -> None:
        """Sleep for `seconds`, waking early (and raising) if cancelled meanwhile."""
        if seconds > 0:
            try:
                await asyncio.wait_for(self._event.wait(), timeout=seconds)
            except asyncio.TimeoutError:
                pass
        self.raise_if_cancelled()
