import asyncio
import logging
from typing import Any, Coroutine, Optional, Set

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Fire-and-forget coroutines detached from the request that started them.

    Each task runs inside its own error boundary: exceptions are logged and
    dropped. Strong references are held until the task finishes so the event
    loop cannot garbage-collect it mid-flight.
    """

    def __init__(self) -> None:
        self._pending: Set[asyncio.Task[Any]] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(self._guard(coro, name or "background"), name=name)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    @staticmethod
    async def _guard(coro: Coroutine[Any, Any, Any], name: str) -> Any:
        try:
            return await coro
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Background task %s failed", name)
            return None

    def __len__(self) -> int:
        return len(self._pending)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for outstanding tasks; cancel whatever is left after `timeout`."""
        while self._pending:
            pending = list(self._pending)
            _, not_done = await asyncio.wait(pending, timeout=timeout)
            if not_done:
                for task in not_done:
                    task.cancel()
                await asyncio.gather(*not_done, return_exceptions=True)
                return
