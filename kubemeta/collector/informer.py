"""List-then-watch notification streams over ``kubernetes_asyncio``.

An :class:`Informer` lists a resource kind, delivers every item as an add
event, flips its sync flag, then follows the watch stream from the list's
resourceVersion.  When the server expires that version (HTTP 410) it relists
and reconciles against its local copy: objects that vanished in between are
delivered as deletes wrapped in :class:`DeletedFinalStateUnknown`.

Handlers are plain synchronous callables and always run to completion; the
stop signal is only observed between events.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from kubernetes_asyncio import watch
from kubernetes_asyncio.client import ApiException

from kubemeta.observability.logging import get_logger
from kubemeta.observability.metrics import watch_reconnects_total

_BACKOFF_INITIAL_S: float = 1.0
_BACKOFF_MAX_S: float = 30.0
_WATCH_TIMEOUT_S: int = 300
_LIST_PAGE_SIZE: int = 500
_SYNC_POLL_INTERVAL_S: float = 0.1
_HTTP_GONE: int = 410

AddHandler = Callable[[Any], None]
UpdateHandler = Callable[[Any, Any], None]
DeleteHandler = Callable[[Any], None]
Transform = Callable[[Any], Any]
HasSynced = Callable[[], bool]


@dataclass(frozen=True)
class DeletedFinalStateUnknown:
    """Delete notification for an object whose final state was never observed.

    ``obj`` is the last state the informer saw.
    """

    key: str
    obj: Any


def ignore_deleted_final_state_unknown(obj: Any) -> Any:
    """Return the wrapped object if *obj* is a :class:`DeletedFinalStateUnknown`."""
    if isinstance(obj, DeletedFinalStateUnknown):
        return obj.obj
    return obj


def object_key(obj: Any) -> str:
    """``namespace/name`` for namespaced objects, ``name`` otherwise."""
    metadata = getattr(obj, "metadata", None)
    name = getattr(metadata, "name", None) or ""
    namespace = getattr(metadata, "namespace", None) or ""
    return f"{namespace}/{name}" if namespace else name


class WatchSource(Protocol):
    """Per-kind notification stream consumed by the metadata cache."""

    kind: str

    def set_transform(self, transform: Transform) -> None: ...

    def add_event_handler(
        self,
        on_add: AddHandler,
        on_update: UpdateHandler,
        on_delete: DeleteHandler,
    ) -> HasSynced: ...

    async def run(self, stop: asyncio.Event) -> None: ...


class _HandlerSet:
    """Registered handlers plus the dispatch helpers shared by every source."""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self._handlers: list[tuple[AddHandler, UpdateHandler, DeleteHandler]] = []
        self._transform: Transform | None = None
        self._started = False
        self._log = get_logger(f"collector.informer.{kind.lower()}")

    def set_transform(self, transform: Transform) -> None:
        if self._started:
            raise RuntimeError(f"{self.kind} informer already started, transform cannot be changed")
        self._transform = transform

    def _apply_transform(self, obj: Any) -> Any:
        return self._transform(obj) if self._transform is not None else obj

    def _dispatch(self, index: int, *args: Any) -> None:
        for handlers in self._handlers:
            try:
                handlers[index](*args)
            except Exception as exc:  # noqa: BLE001
                self._log.error("informer_handler_failed", kind=self.kind, error=str(exc), exc_info=True)

    def _on_add(self, obj: Any) -> None:
        self._dispatch(0, obj)

    def _on_update(self, old: Any, new: Any) -> None:
        self._dispatch(1, old, new)

    def _on_delete(self, obj: Any) -> None:
        self._dispatch(2, obj)


class NoOpInformer(_HandlerSet):
    """Source that never produces events and is synced from the start.

    Used for the namespace stream when no rule needs namespace metadata.
    """

    def __init__(self, kind: str = "Namespace") -> None:
        super().__init__(kind)

    def add_event_handler(self, on_add: AddHandler, on_update: UpdateHandler, on_delete: DeleteHandler) -> HasSynced:
        self._handlers.append((on_add, on_update, on_delete))
        return lambda: True

    async def run(self, stop: asyncio.Event) -> None:
        self._started = True
        await stop.wait()


class Informer(_HandlerSet):
    """Watch stream for one resource kind.

    Args:
        kind: Resource kind, used for logs and metrics.
        list_func: A ``kubernetes_asyncio`` list method, e.g.
            ``CoreV1Api.list_pod_for_all_namespaces``.
        list_args: Positional arguments for *list_func* (e.g. a namespace).
        label_selector: Server-side label selector.
        field_selector: Server-side field selector.
    """

    def __init__(
        self,
        kind: str,
        list_func: Callable[..., Any],
        *list_args: Any,
        label_selector: str = "",
        field_selector: str = "",
        watch_timeout: int = _WATCH_TIMEOUT_S,
    ) -> None:
        super().__init__(kind)
        self._list_func = list_func
        self._list_args = list_args
        self._label_selector = label_selector
        self._field_selector = field_selector
        self._watch_timeout = watch_timeout
        self._items: dict[str, Any] = {}
        self._resource_version: str | None = None
        self._synced = False

    def add_event_handler(self, on_add: AddHandler, on_update: UpdateHandler, on_delete: DeleteHandler) -> HasSynced:
        self._handlers.append((on_add, on_update, on_delete))
        return self.has_synced

    def has_synced(self) -> bool:
        return self._synced

    def _selector_kwargs(self) -> dict[str, str]:
        kwargs = {}
        if self._label_selector:
            kwargs["label_selector"] = self._label_selector
        if self._field_selector:
            kwargs["field_selector"] = self._field_selector
        return kwargs

    async def run(self, stop: asyncio.Event) -> None:
        """List and watch until *stop* is set, reconnecting with back-off."""
        self._started = True
        backoff = _BACKOFF_INITIAL_S
        self._log.info(
            "informer_started",
            kind=self.kind,
            label_selector=self._label_selector,
            field_selector=self._field_selector,
        )
        while not stop.is_set():
            try:
                if self._resource_version is None:
                    await self._relist()
                await self._watch_until(stop)
                backoff = _BACKOFF_INITIAL_S
                continue
            except ApiException as exc:
                if exc.status == _HTTP_GONE:
                    self._log.info("watch_expired_relisting", kind=self.kind)
                    watch_reconnects_total.labels(kind=self.kind, reason="expired").inc()
                    self._resource_version = None
                    continue
                self._log.warning("watch_api_error", kind=self.kind, status=exc.status, reason=exc.reason)
                watch_reconnects_total.labels(kind=self.kind, reason="api_error").inc()
            except Exception as exc:  # noqa: BLE001
                self._log.warning("watch_stream_error", kind=self.kind, error=str(exc))
                watch_reconnects_total.labels(kind=self.kind, reason="stream_error").inc()

            try:
                await asyncio.wait_for(stop.wait(), timeout=backoff)
            except TimeoutError:
                pass
            backoff = min(backoff * 2, _BACKOFF_MAX_S)
        self._log.info("informer_stopped", kind=self.kind)

    async def _relist(self) -> None:
        listed: dict[str, Any] = {}
        continue_token = ""
        resource_version = ""
        while True:
            kwargs: dict[str, Any] = {"limit": _LIST_PAGE_SIZE, **self._selector_kwargs()}
            if continue_token:
                kwargs["_continue"] = continue_token
            result = await self._list_func(*self._list_args, **kwargs)
            for item in result.items or []:
                listed[object_key(item)] = self._apply_transform(item)
            metadata = result.metadata
            resource_version = getattr(metadata, "resource_version", "") or ""
            continue_token = getattr(metadata, "_continue", "") or ""
            if not continue_token:
                break

        previous = self._items
        self._items = listed
        for key, obj in listed.items():
            old = previous.get(key)
            if old is None:
                self._on_add(obj)
            else:
                self._on_update(old, obj)
        for key, old in previous.items():
            if key not in listed:
                self._on_delete(DeletedFinalStateUnknown(key=key, obj=old))

        self._resource_version = resource_version
        if not self._synced:
            self._synced = True
            self._log.info("informer_synced", kind=self.kind, count=len(listed))

    async def _watch_until(self, stop: asyncio.Event) -> None:
        stream_task = asyncio.create_task(self._consume_stream(), name=f"watch-{self.kind.lower()}")
        stop_task = asyncio.create_task(stop.wait())
        try:
            done, _ = await asyncio.wait({stream_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (stream_task, stop_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(stream_task, stop_task, return_exceptions=True)
        if stream_task in done:
            # re-raise stream errors into run()
            stream_task.result()

    async def _consume_stream(self) -> None:
        w = watch.Watch()
        try:
            async for event in w.stream(
                self._list_func,
                *self._list_args,
                resource_version=self._resource_version,
                timeout_seconds=self._watch_timeout,
                allow_watch_bookmarks=True,
                **self._selector_kwargs(),
            ):
                self.handle_event(event)
        finally:
            w.stop()

    def handle_event(self, event: dict[str, Any]) -> None:
        """Apply one watch event to the local copy and notify handlers."""
        event_type = event.get("type", "")
        obj = event.get("object")
        if event_type == "ERROR":
            raw = event.get("raw_object") or {}
            raise ApiException(status=raw.get("code"), reason=raw.get("message", "watch error"))

        metadata = getattr(obj, "metadata", None)
        resource_version = getattr(metadata, "resource_version", None)
        if resource_version:
            self._resource_version = resource_version
        if event_type == "BOOKMARK":
            return

        obj = self._apply_transform(obj)
        key = object_key(obj)
        if event_type in ("ADDED", "MODIFIED"):
            old = self._items.get(key)
            self._items[key] = obj
            if old is None:
                self._on_add(obj)
            else:
                self._on_update(old, obj)
        elif event_type == "DELETED":
            self._items.pop(key, None)
            self._on_delete(obj)
        else:
            self._log.warning("watch_unknown_event_type", kind=self.kind, event_type=event_type)


async def wait_for_cache_sync(
    synced: list[HasSynced],
    timeout: float,
    stop: asyncio.Event | None = None,
) -> bool:
    """Poll *synced* predicates until all are true, *timeout* passes, or *stop* is set.

    Returns:
        True if every predicate reported synced.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        if all(fn() for fn in synced):
            return True
        if (stop is not None and stop.is_set()) or loop.time() >= deadline:
            return False
        await asyncio.sleep(_SYNC_POLL_INTERVAL_S)
