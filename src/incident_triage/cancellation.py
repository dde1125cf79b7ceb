"""Cooperative cancellation shared by the stages of an analysis run."""
import asyncio


class AnalysisCancelled(Exception):
    """Raised at a suspension point once cancellation has been requested."""


class CancelToken:
    """One-shot cancellation signal.

    Bound to the task running the analysis so that cancelling also interrupts
    whatever network call that task is awaiting.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def bind(self, task: asyncio.Task | None) -> None:
        """Attach the task that cancel() should interrupt."""
        self._task = task

    def cancel(self) -> None:
        """Mark the token cancelled and interrupt the bound task from outside it."""
        if self._event.is_set():
            return
        self._event.set()
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if self._task is not None and not self._task.done() and self._task is not current:
            self._task.cancel()

    def raise_if_cancelled(self) -> None:
        """Raise AnalysisCancelled once the token is set."""
        if self._event.is_set():
            raise AnalysisCancelled()


def is_cancellation(error: BaseException, token: CancelToken | None = None) -> bool:
    """True when the error stems from a requested cancellation rather than a failure."""
    if isinstance(error, AnalysisCancelled):
        return True
    if isinstance(error, asyncio.CancelledError):
        return token is None or token.cancelled
    return token is not None and token.cancelled
