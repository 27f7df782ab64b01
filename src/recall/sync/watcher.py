"""File watching with a resettable debounce window.

The watcher never syncs inline: every filesystem notification only (re)arms
the debouncer, and the debounced action runs once the folders have been quiet
for the whole window.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path

from loguru import logger
from watchfiles import Change, awatch

from recall.sync.engine import is_indexable

Action = Callable[[], "Awaitable[None] | None"]


class Debouncer:
    """Run *action* once, *delay* seconds after the most recent ``trigger()``.

    Each trigger cancels the pending scheduled task and starts a new one, so a
    burst of triggers inside the window results in a single call. Once the
    window has elapsed the action is no longer cancellable by a trigger: later
    triggers open a new window and the action in flight runs to completion.
    """

    def __init__(self, delay: float, action: Action) -> None:
        if delay < 0:
            raise ValueError("delay must be >= 0")
        self.delay = delay
        self._action = action
        self._task: asyncio.Task[None] | None = None
        # Tasks past their delay, currently running the action.
        self._running: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done() and self._task not in self._running

    @property
    def running(self) -> bool:
        return bool(self._running)

    def trigger(self) -> None:
        """(Re)start the debounce window. Must be called from the event loop."""
        if self.pending:
            self._task.cancel()
        self._task = asyncio.get_running_loop().create_task(self._fire())

    def cancel(self) -> None:
        """Drop the pending action; an action already running is left to finish."""
        if self.pending:
            self._task.cancel()
        self._task = None

    async def _fire(self) -> None:
        await asyncio.sleep(self.delay)
        task = asyncio.current_task()
        self._running.add(task)
        try:
            result = self._action()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001 - a failed action must not kill later triggers
            logger.exception("Debounced action failed")
        finally:
            self._running.discard(task)


class FileWatcher:
    """Watch source folders and call *on_change* after a quiet period.

    Args:
        paths: Folders to watch (missing folders are skipped with a warning).
        on_change: Called (sync or async) once per debounce window.
        debounce_ms: Quiet period in milliseconds.
    """

    def __init__(
        self,
        paths: Sequence[Path],
        on_change: Action,
        debounce_ms: int = 1000,
    ) -> None:
        self.paths = [Path(p) for p in paths]
        self._debouncer = Debouncer(debounce_ms / 1000.0, on_change)
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def debouncer(self) -> Debouncer:
        return self._debouncer

    def start(self) -> None:
        """Start the watch loop as a background task on the running loop."""
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._watch_loop())

    async def stop(self) -> None:
        """Stop watching and drop any pending debounced action."""
        self._stop_event.set()
        self._debouncer.cancel()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def notify(self, changes: set[tuple[Change, str]] | None = None) -> None:
        """Record a filesystem notification (re-arms the debounce window)."""
        if changes:
            logger.debug("{} change(s) observed; debouncing", len(changes))
        self._debouncer.trigger()

    @staticmethod
    def watch_filter(change: Change, path: str) -> bool:
        return is_indexable(Path(path))

    async def _watch_loop(self) -> None:
        existing = [str(p) for p in self.paths if p.is_dir()]
        for missing in set(map(str, self.paths)) - set(existing):
            logger.warning("Watch path does not exist: {}", missing)
        if not existing:
            return

        try:
            async for changes in awatch(
                *existing,
                watch_filter=self.watch_filter,
                stop_event=self._stop_event,
            ):
                if self._stop_event.is_set():
                    break
                self.notify(changes)
        except FileNotFoundError as exc:
            # Watched folder deleted while running
            logger.warning("Watch path no longer exists: {}", exc)
