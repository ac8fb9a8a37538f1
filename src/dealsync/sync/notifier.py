"""In-process change bus and the notifier that turns changes into sync intents.

ChangeBus is a small async pub/sub: subscribers get a Subscription handle
and unsubscribe through it (idempotent). ChangeNotifier owns exactly one
subscription for its lifetime; calling start() twice does not register a
second handler.

Classification of a change:
- state changed and value changed -> full_sync
- state changed only              -> state_sync
- value changed only              -> amount_sync
- nothing changed                 -> suppressed
"""

from __future__ import annotations

import itertools
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import structlog

from src.dealsync.sync.schemas import ChangeEvent, SyncOperation

if TYPE_CHECKING:
    from src.dealsync.sync.dispatcher import SyncDispatcher

logger = structlog.get_logger(__name__)

ChangeHandler = Callable[[ChangeEvent], Awaitable[None]]


# ── Change Bus ──────────────────────────────────────────────────────────────


class Subscription:
    """Handle returned by ChangeBus.subscribe()."""

    def __init__(self, bus: ChangeBus, key: int) -> None:
        self._bus = bus
        self._key = key
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._bus._remove(self._key)


class ChangeBus:
    """Async fan-out of ChangeEvents to registered handlers.

    A failing handler is logged and does not prevent delivery to the
    others; the mutation that produced the event is already committed and
    the auditor reconciles anything a handler missed.
    """

    def __init__(self) -> None:
        self._handlers: dict[int, ChangeHandler] = {}
        self._keys = itertools.count()

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    def subscribe(self, handler: ChangeHandler) -> Subscription:
        key = next(self._keys)
        self._handlers[key] = handler
        return Subscription(self, key)

    def _remove(self, key: int) -> None:
        self._handlers.pop(key, None)

    async def publish(self, event: ChangeEvent) -> None:
        for handler in list(self._handlers.values()):
            try:
                await handler(event)
            except Exception:
                logger.exception(
                    "change_bus.handler_failed",
                    business_id=event.business_id,
                )


# ── Notifier ────────────────────────────────────────────────────────────────


def classify_change(event: ChangeEvent) -> SyncOperation | None:
    """Map a change to the sync operation it requires, or None for a no-op."""
    if event.requested_operation is not None:
        return event.requested_operation
    if event.state_changed and event.value_changed:
        return SyncOperation.FULL_SYNC
    if event.state_changed:
        return SyncOperation.STATE_SYNC
    if event.value_changed:
        return SyncOperation.AMOUNT_SYNC
    return None


class ChangeNotifier:
    """Subscribes to the change bus and enqueues sync intents.

    Args:
        bus: ChangeBus publishing committed business changes.
        dispatcher: SyncDispatcher receiving the enqueued intents.
    """

    def __init__(self, bus: ChangeBus, dispatcher: SyncDispatcher) -> None:
        self._bus = bus
        self._dispatcher = dispatcher
        self._subscription: Subscription | None = None

    @property
    def running(self) -> bool:
        return self._subscription is not None and self._subscription.active

    def start(self) -> None:
        if self.running:
            return
        self._subscription = self._bus.subscribe(self._on_change)
        logger.info("notifier.started")

    def stop(self) -> None:
        if self._subscription is None:
            return
        self._subscription.unsubscribe()
        self._subscription = None
        logger.info("notifier.stopped")

    async def _on_change(self, event: ChangeEvent) -> None:
        operation = classify_change(event)
        if operation is None:
            logger.debug("notifier.no_op_suppressed", business_id=event.business_id)
            return
        if event.external_id is None:
            logger.debug("notifier.unlinked_skipped", business_id=event.business_id)
            return

        await self._dispatcher.enqueue(
            event.business_id,
            operation,
            trigger_source=event.trigger_source,
            payload={
                "old_state": event.old_state.value if event.old_state else None,
                "new_state": event.new_state.value,
                "old_value": str(event.old_value),
                "new_value": str(event.new_value),
            },
        )
