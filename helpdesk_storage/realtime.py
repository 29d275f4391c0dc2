"""
Polling-based change notifications.

For backends without native subscriptions, a PollingChangeDetector re-reads
a bounded window of a table on a timer and diffs it against the previous
read by primary key, synthesizing INSERT, UPDATE and DELETE events.

Precision bound: only the ``window`` most recently updated rows are
compared. Rows that move in or out of the window look like inserts and
deletes, and changes beyond the window are invisible. Callers must not
assume the stream is complete.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from .providers.capabilities import RealtimeCapable

if TYPE_CHECKING:
    from .providers.base import StorageProvider

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 5.0
DEFAULT_WINDOW = 100


class ChangeEvent(Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    ALL = "*"

    def matches(self, event: ChangeEvent) -> bool:
        return self is ChangeEvent.ALL or self is event


@dataclass
class RealtimePayload:
    """One synthesized (or native) change."""

    event_type: ChangeEvent
    table: str
    new: dict[str, Any] | None = None
    old: dict[str, Any] | None = None
    schema: str = "public"
    commit_timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())


ChangeCallback = Callable[[RealtimePayload], Awaitable[None] | None]


@dataclass
class ChangeSubscription:
    """Polling state for one (table, event) key.

    ``interval`` and ``window`` are fixed by the first subscriber.
    ``snapshot`` is None until the first read primes it.
    """

    table: str
    event: ChangeEvent
    interval: float
    window: int
    callbacks: list[ChangeCallback] = field(default_factory=list)
    snapshot: list[dict[str, Any]] | None = None
    last_check: datetime | None = None
    task: asyncio.Task[None] | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def key(self) -> tuple[str, ChangeEvent]:
        return (self.table, self.event)


def diff_snapshots(
    old_rows: list[dict[str, Any]],
    new_rows: list[dict[str, Any]],
    event: ChangeEvent,
    table: str,
    primary_key: str = "id",
) -> list[RealtimePayload]:
    """Compare two reads by primary key.

    New-only keys are INSERTs, keys in both with unequal rows are UPDATEs,
    old-only keys are DELETEs. Rows without a primary key are ignored.
    """
    old_by_id = {row[primary_key]: row for row in old_rows if row.get(primary_key) is not None}
    new_by_id = {row[primary_key]: row for row in new_rows if row.get(primary_key) is not None}
    changes: list[RealtimePayload] = []

    if event.matches(ChangeEvent.INSERT):
        for row_id, row in new_by_id.items():
            if row_id not in old_by_id:
                changes.append(RealtimePayload(ChangeEvent.INSERT, table, new=row))

    if event.matches(ChangeEvent.UPDATE):
        for row_id, row in new_by_id.items():
            previous = old_by_id.get(row_id)
            if previous is not None and previous != row:
                changes.append(RealtimePayload(ChangeEvent.UPDATE, table, new=row, old=previous))

    if event.matches(ChangeEvent.DELETE):
        for row_id, row in old_by_id.items():
            if row_id not in new_by_id:
                changes.append(RealtimePayload(ChangeEvent.DELETE, table, old=row))

    return changes


class PollingChangeDetector:
    """Reference-counted pollers keyed by (table, event).

    The first subscriber to a key primes the snapshot and starts its timer;
    the last unsubscribe stops it.

    Example:
        >>> detector = PollingChangeDetector(provider, interval=5.0)
        >>> unsubscribe = await detector.subscribe("tickets", "INSERT", on_ticket)
        >>> ...
        >>> unsubscribe()
    """

    def __init__(
        self,
        provider: StorageProvider,
        interval: float = DEFAULT_INTERVAL,
        window: int = DEFAULT_WINDOW,
        order_column: str | None = "updated_at",
        primary_key: str = "id",
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        if window <= 0:
            raise ValueError("window must be positive")
        self.provider = provider
        self.interval = interval
        self.window = window
        self.order_column = order_column
        self.primary_key = primary_key
        self._subscriptions: dict[tuple[str, ChangeEvent], ChangeSubscription] = {}

    @property
    def active_subscriptions(self) -> list[ChangeSubscription]:
        return list(self._subscriptions.values())

    def get_subscription(self, table: str, event: str | ChangeEvent) -> ChangeSubscription | None:
        return self._subscriptions.get((table, ChangeEvent(event)))

    async def subscribe(
        self,
        table: str,
        event: str | ChangeEvent,
        callback: ChangeCallback,
        *,
        interval: float | None = None,
        window: int | None = None,
    ) -> Callable[[], None]:
        """Register a callback for changes on ``table``.

        Args:
            table: Table to watch
            event: "INSERT", "UPDATE", "DELETE" or "*"
            callback: Sync or async callable receiving RealtimePayload
            interval: Seconds between reads (first subscriber only)
            window: Rows compared per read (first subscriber only)

        Returns:
            Idempotent unsubscribe callable.

        Raises:
            ValueError: If interval/window conflict with the key's existing poller.
        """
        event = ChangeEvent(event)
        key = (table, event)
        subscription = self._subscriptions.get(key)

        if subscription is None:
            subscription = ChangeSubscription(
                table=table,
                event=event,
                interval=interval if interval is not None else self.interval,
                window=window if window is not None else self.window,
            )
            self._subscriptions[key] = subscription
            subscription.callbacks.append(callback)
            await self._tick(subscription)
            # Unsubscribed while priming
            if self._subscriptions.get(key) is subscription and subscription.callbacks:
                subscription.task = asyncio.create_task(self._poll_loop(subscription))
                logger.debug(
                    f"Started polling {table} ({event.value}) every {subscription.interval}s"
                )
        else:
            if interval is not None and interval != subscription.interval:
                raise ValueError(
                    f"Polling interval for {table}/{event.value} "
                    f"is fixed at {subscription.interval}s"
                )
            if window is not None and window != subscription.window:
                raise ValueError(
                    f"Polling window for {table}/{event.value} "
                    f"is fixed at {subscription.window} rows"
                )
            subscription.callbacks.append(callback)

        removed = False

        def unsubscribe() -> None:
            nonlocal removed
            if removed:
                return
            removed = True
            if callback in subscription.callbacks:
                subscription.callbacks.remove(callback)
            if not subscription.callbacks:
                self._stop(subscription)

        return unsubscribe

    def _stop(self, subscription: ChangeSubscription) -> None:
        if subscription.task is not None:
            subscription.task.cancel()
            subscription.task = None
        if self._subscriptions.get(subscription.key) is subscription:
            del self._subscriptions[subscription.key]
            logger.debug(f"Stopped polling {subscription.table} ({subscription.event.value})")

    async def stop_all(self) -> None:
        tasks = [s.task for s in self._subscriptions.values() if s.task is not None]
        for subscription in list(self._subscriptions.values()):
            self._stop(subscription)
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def poll_now(self, table: str, event: str | ChangeEvent) -> list[RealtimePayload]:
        """Run one read-and-diff immediately and return the emitted changes."""
        subscription = self.get_subscription(table, event)
        if subscription is None:
            raise KeyError(f"No subscription for {table}/{ChangeEvent(event).value}")
        return await self._tick(subscription)

    async def _poll_loop(self, subscription: ChangeSubscription) -> None:
        while True:
            await asyncio.sleep(subscription.interval)
            await self._tick(subscription)

    async def _read_window(self, subscription: ChangeSubscription) -> list[dict[str, Any]] | None:
        query = self.provider.from_(subscription.table).select("*")
        if self.order_column:
            query = query.order(self.order_column, ascending=False)
        result = await query.limit(subscription.window).execute()

        if result.error is not None:
            logger.warning(f"Polling {subscription.table} failed: {result.error}")
            return None
        if result.data is None:
            return []
        return result.data if isinstance(result.data, list) else [result.data]

    async def _tick(self, subscription: ChangeSubscription) -> list[RealtimePayload]:
        async with subscription.lock:
            rows = await self._read_window(subscription)
            if rows is None:
                return []

            subscription.last_check = datetime.now(UTC)
            if subscription.snapshot is None:
                subscription.snapshot = rows
                return []

            changes = diff_snapshots(
                subscription.snapshot,
                rows,
                subscription.event,
                subscription.table,
                self.primary_key,
            )
            subscription.snapshot = rows

        for change in changes:
            for callback in list(subscription.callbacks):
                try:
                    outcome = callback(change)
                    if inspect.isawaitable(outcome):
                        await outcome
                except Exception as e:
                    logger.error(f"Change callback failed for {subscription.table}: {e}")
        return changes


class PollingRealtimeMixin(RealtimeCapable):
    """Realtime capability emulated with a PollingChangeDetector.

    Providers mixing this in must call ``_stop_polling`` on disconnect.
    """

    polling_interval: float = DEFAULT_INTERVAL
    polling_window: int = DEFAULT_WINDOW
    _change_detector: PollingChangeDetector | None = None

    @property
    def change_detector(self) -> PollingChangeDetector:
        if self._change_detector is None:
            self._change_detector = PollingChangeDetector(
                self,  # type: ignore[arg-type]
                interval=self.polling_interval,
                window=self.polling_window,
            )
        return self._change_detector

    async def subscribe_changes(
        self, table: str, event: str, callback: ChangeCallback
    ) -> Callable[[], Awaitable[None]]:
        unsubscribe = await self.change_detector.subscribe(table, event, callback)

        async def _unsubscribe() -> None:
            unsubscribe()

        return _unsubscribe

    async def _stop_polling(self) -> None:
        if self._change_detector is not None:
            await self._change_detector.stop_all()
