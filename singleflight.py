import asyncio
from typing import Awaitable, Dict, Optional


class SingleFlight:
    """
    Keyed registry of in-flight tasks: at most one per key.

    Callers asking for a key that is already running get the same task
    and share its result. Entries are dropped when the task finishes.
    Tasks are not tied to the caller: they run to completion even if
    the request that started them is gone.
    """

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}

    def get(self, key: str) -> Optional[asyncio.Task]:
        return self._tasks.get(key)

    def start(self, key: str, coro: Awaitable) -> asyncio.Task:
        existing = self._tasks.get(key)
        if existing is not None:
            # Never awaited, close to avoid a "never awaited" warning
            coro.close()
            return existing

        task = asyncio.get_running_loop().create_task(coro)
        self._tasks[key] = task
        task.add_done_callback(lambda t, k=key: self._forget(k, t))
        return task

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]

    def __contains__(self, key: str) -> bool:
        return key in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every in-flight task (shutdown, tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
