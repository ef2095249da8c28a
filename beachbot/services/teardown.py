from __future__ import annotations

import asyncio
from typing import Awaitable, Callable


class TeardownScheduler:
    """One cancellable delayed task per trade session.

    The task index is a cache keyed by session id; the persisted session
    row stays the system of record.
    """

    def __init__(self) -> None:
        self._tasks: dict[int, asyncio.Task] = {}

    def schedule(
        self,
        session_id: int,
        delay: float,
        callback: Callable[[int], Awaitable[None]],
    ) -> asyncio.Task:
        session_id = int(session_id)
        self.cancel(session_id)
        task = asyncio.create_task(self._run(session_id, max(0.0, float(delay)), callback))
        self._tasks[session_id] = task
        return task

    async def _run(
        self,
        session_id: int,
        delay: float,
        callback: Callable[[int], Awaitable[None]],
    ) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return
        if self._tasks.get(session_id) is asyncio.current_task():
            self._tasks.pop(session_id, None)
        try:
            await callback(session_id)
        except Exception as exc:
            print(f"[teardown] callback failed session={session_id}: {exc}")

    def cancel(self, session_id: int) -> bool:
        task = self._tasks.pop(int(session_id), None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def pending(self) -> set[int]:
        return {sid for sid, task in self._tasks.items() if not task.done()}

    async def close(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
