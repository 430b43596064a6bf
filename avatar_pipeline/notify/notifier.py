"""Progress notifier contract and the pipeline's fire-and-forget wrapper."""

import asyncio
import inspect
import logging
from collections import deque
from typing import Any, Awaitable, Deque, Dict, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Real-time progress push, routed by user id.

    ``notify`` may be a plain function or a coroutine function. A plain
    function must hand the event to its transport without waiting on it.
    """

    def notify(self, user_id: str, stage: str, status: str, payload: Dict[str, Any]) -> Any:
        ...


class LoggingNotifier:
    """Notifier with no transport; writes each event to the log."""

    def notify(self, user_id: str, stage: str, status: str, payload: Dict[str, Any]) -> None:
        logger.info(f"[notify] user={user_id} {stage}/{status} {payload.get('message', '')}")


class SafeNotifier:
    """Wraps a notifier so delivery never blocks or breaks the pipeline.

    Coroutines returned by an async notifier are delivered one after another
    by a background sender task, in the order they were emitted. The caller
    returns as soon as the event is queued.
    """

    def __init__(self, inner: Notifier):
        self._inner = inner
        self._outbox: Deque[Tuple[Awaitable[Any], str]] = deque()
        self._sender: Optional[asyncio.Task] = None

    def notify(
        self,
        user_id: str,
        stage: str,
        status: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        description = f"{stage}/{status} for user {user_id}"
        try:
            result = self._inner.notify(user_id, stage, status, payload or {})
        except Exception as exc:
            logger.warning(f"Notification {description} not delivered: {exc}")
            return

        if inspect.isawaitable(result):
            self._outbox.append((result, description))
            if self._sender is None or self._sender.done():
                self._sender = asyncio.get_running_loop().create_task(self._send_pending())

    @property
    def pending(self) -> int:
        return len(self._outbox)

    async def drain(self) -> None:
        """Wait until every queued notification has been attempted."""
        while self._sender is not None and not self._sender.done():
            await asyncio.shield(self._sender)

    async def _send_pending(self) -> None:
        while self._outbox:
            delivery, description = self._outbox.popleft()
            try:
                await delivery
            except Exception as exc:
                logger.warning(f"Notification {description} not delivered: {exc}")
