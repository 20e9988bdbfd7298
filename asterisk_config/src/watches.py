from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass

from kubernetes import watch
from kubernetes.client import CoreV1Api

from asterisk_config.src.errors import WatchFailedError
from asterisk_config.src.kube import ResourceKind, current_resource_version
from asterisk_config.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class ChangeSignal:
    """Level-triggered "something changed" flag shared by every watcher.

    Any number of ``mark()`` calls between two ``wait()`` calls produce a
    single wake.  The first error passed to ``mark()`` is retained so the
    waiter can tell a real change from a dead watch.
    """

    def __init__(self) -> None:
        self._condition = threading.Condition()
        self._dirty = False
        self._error: BaseException | None = None

    def mark(self, error: BaseException | None = None) -> None:
        with self._condition:
            self._dirty = True
            if error is not None and self._error is None:
                self._error = error
            self._condition.notify_all()

    def clear(self) -> None:
        with self._condition:
            self._dirty = False
            self._error = None

    def is_set(self) -> bool:
        with self._condition:
            return self._dirty

    @property
    def error(self) -> BaseException | None:
        with self._condition:
            return self._error

    def wait(self, timeout: float | None = None) -> bool:
        """Block until marked; consume the mark and return ``True``, or ``False`` on timeout."""
        with self._condition:
            if not self._condition.wait_for(lambda: self._dirty, timeout=timeout):
                return False
            self._dirty = False
            return True


@dataclass(frozen=True)
class WatchKey:
    kind: str
    namespace: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}"


class WatchState(enum.Enum):
    UNARMED = "unarmed"
    ARMED = "armed"
    CLOSED = "closed"
    FAILED = "failed"


class ResourceWatch:
    """One watch over every object of a kind in a namespace.

    The watch is single-shot: the first event, stream closure, or error ends
    it and marks the change signal.  The supervisor rebuilds all watches on
    the next cycle, so there is no resync or reconnect logic here.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        kind: ResourceKind,
        namespace: str,
        changes: ChangeSignal,
        stop_event: threading.Event,
        api_timeout_seconds: float,
        watch_timeout_seconds: int,
    ) -> None:
        self.core_api = core_api
        self.kind = kind
        self.key = WatchKey(kind.name, namespace)
        self.changes = changes
        self.stop_event = stop_event
        self.api_timeout_seconds = api_timeout_seconds
        self.watch_timeout_seconds = watch_timeout_seconds
        self.state = WatchState.UNARMED
        self.error: WatchFailedError | None = None
        self._closed = threading.Event()
        self._state_lock = threading.Lock()
        self._watcher: watch.Watch | None = None
        self._thread: threading.Thread | None = None

    def _cancelled(self) -> bool:
        return self._closed.is_set() or self.stop_event.is_set()

    def start(self) -> None:
        """Arm the watch: capture the collection version and start the consumer thread."""
        with self._state_lock:
            self.state = WatchState.ARMED
        METRICS.watches_armed.inc()
        try:
            resource_version = current_resource_version(
                self.core_api,
                self.kind,
                self.key.namespace,
                self.api_timeout_seconds,
            )
        except Exception as exc:
            self._finish(WatchState.FAILED, exc)
            raise

        watcher = watch.Watch()
        self._watcher = watcher
        self._thread = threading.Thread(
            target=self._consume,
            args=(watcher, resource_version),
            name=f"watch-{self.key.kind}-{self.key.namespace}".lower(),
            daemon=True,
        )
        self._thread.start()
        LOGGER.info("Armed watch for %s from resourceVersion %s", self.key, resource_version)

    def _consume(self, watcher: watch.Watch, resource_version: str | None) -> None:
        lister = getattr(self.core_api, self.kind.list_method)
        try:
            stream = watcher.stream(
                lister,
                namespace=self.key.namespace,
                resource_version=resource_version,
                timeout_seconds=self.watch_timeout_seconds,
            )
            for event in stream:
                if self._cancelled():
                    return
                event_type = str(event.get("type", ""))
                if event_type == "ERROR":
                    raise WatchFailedError(
                        f"watch for {self.key} returned an error event: {event.get('raw_object')}"
                    )
                name = getattr(getattr(event.get("object"), "metadata", None), "name", None)
                LOGGER.info("Change detected: %s %s %s", event_type, self.key, name)
                self._finish(WatchState.CLOSED)
                return
        except Exception as exc:
            if self._cancelled():
                return
            self._finish(WatchState.FAILED, exc)
            return

        if not self._cancelled():
            LOGGER.info("Watch stream for %s closed", self.key)
            self._finish(WatchState.CLOSED)

    def _finish(self, state: WatchState, error: BaseException | None = None) -> None:
        with self._state_lock:
            if self.state not in {WatchState.ARMED, WatchState.UNARMED}:
                return
            self.state = state
        METRICS.watches_armed.dec()
        if self._watcher is not None:
            self._watcher.stop()

        if state is WatchState.FAILED:
            failure = WatchFailedError(f"watch for {self.key} failed: {error}")
            failure.__cause__ = error
            self.error = failure
            LOGGER.error("Watch for %s failed: %s", self.key, error)
            METRICS.watch_events_total.labels(kind=self.key.kind, outcome="failed").inc()
            self.changes.mark(failure)
        else:
            METRICS.watch_events_total.labels(kind=self.key.kind, outcome="changed").inc()
            self.changes.mark()

    def stop(self) -> None:
        """Cancel the watch without marking the change signal."""
        self._closed.set()
        with self._state_lock:
            was_armed = self.state is WatchState.ARMED
            if was_armed:
                self.state = WatchState.CLOSED
        if was_armed:
            METRICS.watches_armed.dec()
        if self._watcher is not None:
            self._watcher.stop()


class WatchRegistry:
    """Arms at most one :class:`ResourceWatch` per ``(kind, namespace)``."""

    def __init__(
        self,
        core_api: CoreV1Api,
        changes: ChangeSignal,
        stop_event: threading.Event,
        api_timeout_seconds: float = 10.0,
        watch_timeout_seconds: int = 600,
    ) -> None:
        self.core_api = core_api
        self.changes = changes
        self.stop_event = stop_event
        self.api_timeout_seconds = api_timeout_seconds
        self.watch_timeout_seconds = watch_timeout_seconds
        self._watches: dict[WatchKey, ResourceWatch] = {}
        self._lock = threading.Lock()
        self._closed = False

    def ensure_watch(self, kind: ResourceKind, namespace: str) -> bool:
        """Arm a watch for *kind* in *namespace* unless one already exists.

        Returns ``True`` only for the call that armed it.  The map entry is
        claimed under the lock; the list call and thread start happen outside
        it so concurrent lookups of other keys are not serialized on I/O.
        """
        key = WatchKey(kind.name, namespace)
        with self._lock:
            if self._closed or key in self._watches:
                return False
            resource_watch = ResourceWatch(
                core_api=self.core_api,
                kind=kind,
                namespace=namespace,
                changes=self.changes,
                stop_event=self.stop_event,
                api_timeout_seconds=self.api_timeout_seconds,
                watch_timeout_seconds=self.watch_timeout_seconds,
            )
            self._watches[key] = resource_watch

        resource_watch.start()
        return True

    def keys(self) -> list[WatchKey]:
        with self._lock:
            return list(self._watches)

    def state(self, key: WatchKey) -> WatchState:
        with self._lock:
            resource_watch = self._watches.get(key)
        return resource_watch.state if resource_watch is not None else WatchState.UNARMED

    def failure(self) -> WatchFailedError | None:
        """Return the first recorded watch failure, if any."""
        with self._lock:
            watches = list(self._watches.values())
        for resource_watch in watches:
            if resource_watch.error is not None:
                return resource_watch.error
        return None

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            watches = list(self._watches.values())
        for resource_watch in watches:
            resource_watch.stop()
        LOGGER.debug("Closed %d watch(es)", len(watches))

