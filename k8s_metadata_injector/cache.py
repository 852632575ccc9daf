"""Watch-backed, thread-safe caches of PersistentVolumes and claims."""

import logging
import threading
import time
from typing import Any, Callable, Optional

from kubernetes import watch
from kubernetes.client.rest import ApiException

from .helpers import object_key

log = logging.getLogger("k8s-metadata-injector")

Handler = Optional[Callable[..., None]]


class ResourceCache:
    """Keyed store of the latest observed objects of one kind."""

    def __init__(self) -> None:
        self._items: dict[str, Any] = {}
        self._lock = threading.RLock()

    def get_by_key(self, key: str) -> tuple[Any, bool]:
        with self._lock:
            obj = self._items.get(key)
            return obj, obj is not None

    def add(self, obj: Any) -> Any:
        """Store obj and return the previous object under its key, if any."""
        key = object_key(obj)
        with self._lock:
            old = self._items.get(key)
            self._items[key] = obj
            return old

    def delete(self, obj: Any) -> Any:
        with self._lock:
            return self._items.pop(object_key(obj), None)

    def replace(self, objs: list[Any]) -> tuple[list[tuple[Any, Any]], list[Any]]:
        """
        Swap the whole content for objs.
        Returns ([(old_or_None, new), ...], [removed, ...]).
        """
        fresh = {object_key(o): o for o in objs}
        with self._lock:
            previous = self._items
            self._items = fresh
        upserts = [(previous.get(k), o) for k, o in fresh.items()]
        removed = [o for k, o in previous.items() if k not in fresh]
        return upserts, removed

    def objects(self) -> list[Any]:
        with self._lock:
            return list(self._items.values())

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._items)


class Informer(threading.Thread):
    """
    List, then watch, one resource kind into a ResourceCache and dispatch
    add/update/delete callbacks. Every resync_period the cached objects are
    re-dispatched as updates with old == new.
    """

    def __init__(
        self,
        name: str,
        list_func: Callable[..., Any],
        stop_event: threading.Event,
        resync_period: float = 1800,
        watch_timeout: int = 300,
        on_add: Handler = None,
        on_update: Handler = None,
        on_delete: Handler = None,
    ) -> None:
        super().__init__(name=f"{name}-informer", daemon=True)
        self.kind = name
        self.cache = ResourceCache()
        self._list_func = list_func
        self._stop_event = stop_event
        self._resync_period = resync_period
        self._watch_timeout = watch_timeout
        self._on_add = on_add
        self._on_update = on_update
        self._on_delete = on_delete
        self._synced = threading.Event()
        self._watch: watch.Watch | None = None
        self._resource_version: str | None = None
        self._last_resync = time.monotonic()

    def add_event_handler(
        self, on_add: Handler = None, on_update: Handler = None, on_delete: Handler = None
    ) -> None:
        self._on_add = on_add or self._on_add
        self._on_update = on_update or self._on_update
        self._on_delete = on_delete or self._on_delete

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def get_by_key(self, key: str) -> tuple[Any, bool]:
        return self.cache.get_by_key(key)

    def stop(self) -> None:
        self._stop_event.set()
        if self._watch is not None:
            self._watch.stop()

    def run(self) -> None:
        log.info("Starting %s informer", self.kind)
        while not self._stop_event.is_set():
            try:
                if self._resource_version is None:
                    self.list_and_replace()
                self.watch_once()
                self.maybe_resync()
            except ApiException as e:
                if e.status == 410:
                    log.info("%s watch expired; relisting", self.kind)
                    self._resource_version = None
                    continue
                log.error("%s watch error: %s", self.kind, e)
                self._stop_event.wait(5)
            except Exception as e:
                log.error("Unexpected error in %s informer: %s", self.kind, e)
                self._stop_event.wait(5)
        log.info("Stopped %s informer", self.kind)

    def list_and_replace(self) -> None:
        resp = self._list_func()
        upserts, removed = self.cache.replace(list(resp.items or []))
        self._resource_version = resp.metadata.resource_version
        for obj in removed:
            self._dispatch(self._on_delete, obj)
        for old, new in upserts:
            if old is None:
                self._dispatch(self._on_add, new)
            else:
                self._dispatch(self._on_update, old, new)
        if not self._synced.is_set():
            log.info("%s cache synced (%d objects)", self.kind, len(upserts))
            self._synced.set()

    def watch_once(self) -> None:
        self._watch = watch.Watch()
        try:
            for event in self._watch.stream(
                self._list_func,
                resource_version=self._resource_version,
                timeout_seconds=self._watch_timeout,
            ):
                if self._stop_event.is_set():
                    break
                self.handle_event(event["type"], event["object"])
                self.maybe_resync()
        finally:
            self._watch.stop()

    def handle_event(self, event_type: str, obj: Any) -> None:
        if event_type == "ERROR":
            # The watch yields the raw Status body for errors
            code = obj.get("code") if isinstance(obj, dict) else None
            raise ApiException(status=code or 500, reason=str(obj))

        rv = getattr(obj.metadata, "resource_version", None)
        if rv:
            self._resource_version = rv

        if event_type == "ADDED" or event_type == "MODIFIED":
            old = self.cache.add(obj)
            if old is None:
                self._dispatch(self._on_add, obj)
            else:
                self._dispatch(self._on_update, old, obj)
        elif event_type == "DELETED":
            self.cache.delete(obj)
            self._dispatch(self._on_delete, obj)

    def maybe_resync(self) -> None:
        if not self._resync_period or self._resync_period <= 0:
            return
        now = time.monotonic()
        if now - self._last_resync < self._resync_period:
            return
        self._last_resync = now
        log.debug("Resyncing %s cache", self.kind)
        for obj in self.cache.objects():
            self._dispatch(self._on_update, obj, obj)

    def _dispatch(self, handler: Handler, *objs: Any) -> None:
        if handler is None:
            return
        try:
            handler(*objs)
        except Exception:
            log.error("%s event handler failed", self.kind, exc_info=True)


def wait_for_cache_sync(
    stop_event: threading.Event, *informers: Informer, poll_interval: float = 0.1
) -> bool:
    """Block until every informer has synced. False if stop_event fired first."""
    while not all(i.has_synced() for i in informers):
        if stop_event.wait(poll_interval):
            return False
    return True
