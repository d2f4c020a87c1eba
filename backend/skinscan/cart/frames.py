"""
In-process model of browser windows and cross-document messaging.

`FrameWindow.post_message` mirrors `window.postMessage`:
  • the message is structurally cloned (JSON round-trip),
  • delivery is asynchronous (scheduled on the running loop),
  • a message whose target origin does not match is silently dropped,
  • a message posted before any listener is attached is silently lost.
"""

import asyncio
import json
from typing import Any, Awaitable, Callable

from skinscan.core.logging import get_logger

logger = get_logger("frames")

WILDCARD_ORIGIN = "*"


class MessageEvent:
    def __init__(self, data: Any, origin: str, source: "FrameWindow | None"):
        self.data = data
        self.origin = origin
        self.source = source


Listener = Callable[[MessageEvent], Awaitable[None] | None]


class FrameWindow:
    """A top-level page or an iframe inside one."""

    def __init__(self, origin: str, parent: "FrameWindow | None" = None, name: str | None = None):
        self.origin = origin
        self.parent = parent
        self.name = name or origin
        self._frames: list[FrameWindow] = []
        self._listeners: list[Listener] = []
        self._pending: set[asyncio.Task] = set()

    def __repr__(self) -> str:
        return f"<FrameWindow {self.name}>"

    # ── Frame tree ───────────────────────────────────────────────────────

    def embed(self, origin: str, name: str | None = None) -> "FrameWindow":
        """Create an iframe inside this window."""
        child = FrameWindow(origin, parent=self, name=name)
        self._frames.append(child)
        return child

    def remove(self, frame: "FrameWindow") -> None:
        if frame in self._frames:
            self._frames.remove(frame)
            frame.parent = None

    def iframes(self) -> list["FrameWindow"]:
        return list(self._frames)

    @property
    def is_top(self) -> bool:
        return self.parent is None

    # ── Listeners ────────────────────────────────────────────────────────

    def add_event_listener(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_event_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ── Messaging ────────────────────────────────────────────────────────

    def post_message(
        self,
        message: Any,
        target_origin: str = WILDCARD_ORIGIN,
        source: "FrameWindow | None" = None,
    ) -> None:
        """Queue `message` for this window's listeners."""
        if target_origin != WILDCARD_ORIGIN and target_origin != self.origin:
            logger.debug("Dropping message for %s: target origin %s mismatch", self, target_origin)
            return

        if not self._listeners:
            logger.debug("Dropping message for %s: no listener attached", self)
            return

        data = json.loads(json.dumps(message))
        event = MessageEvent(data, origin=source.origin if source else "null", source=source)

        loop = asyncio.get_running_loop()
        for listener in list(self._listeners):
            task = loop.create_task(self._dispatch(listener, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _dispatch(self, listener: Listener, event: MessageEvent) -> None:
        try:
            result = listener(event)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            # A failing handler must not break delivery to the others
            logger.exception("Message listener on %s raised", self)

    async def settle(self) -> None:
        """Wait until every message queued on this tree has been handled."""
        while True:
            pending = self._all_pending()
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def _all_pending(self) -> list[asyncio.Task]:
        tasks = list(self._pending)
        for frame in self._frames:
            tasks.extend(frame._all_pending())
        return tasks
