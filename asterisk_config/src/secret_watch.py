from __future__ import annotations

import logging
import random
import threading

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

from asterisk_config.src.errors import TransientAPIError
from asterisk_config.src.kube import SECRET, current_resource_version
from asterisk_config.src.watches import ChangeSignal

LOGGER = logging.getLogger(__name__)


class SecretSourceWatcher:
    """Watches the Secret holding the source archive and marks the change signal.

    Unlike the per-cycle resource watches this one lives for a whole service
    run: a change to the archive means the entire custom template tree may
    differ, so the supervisor answers with a full cycle rather than relying
    on the resource watches.  Stream closure re-arms the watch; API errors
    back off with jitter up to 30 s.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        namespace: str,
        secret_name: str,
        changes: ChangeSignal,
        api_timeout_seconds: float = 10.0,
        watch_timeout_seconds: int = 600,
    ) -> None:
        self.core_api = core_api
        self.namespace = namespace
        self.secret_name = secret_name
        self.changes = changes
        self.api_timeout_seconds = api_timeout_seconds
        self.watch_timeout_seconds = watch_timeout_seconds
        self._field_selector = f"metadata.name={secret_name}"
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def start(self, stop_event: threading.Event) -> threading.Thread:
        thread = threading.Thread(
            target=self.run_forever, args=(stop_event,), name="secret-source-watch", daemon=True
        )
        thread.start()
        return thread

    def watch_once(self, stop_event: threading.Event) -> bool:
        """Consume one watch stream; return ``True`` if the Secret changed."""
        resource_version = current_resource_version(
            self.core_api,
            SECRET,
            self.namespace,
            self.api_timeout_seconds,
            field_selector=self._field_selector,
        )
        watcher = watch.Watch()
        with self._watcher_lock:
            self._active_watcher = watcher
        try:
            for event in watcher.stream(
                self.core_api.list_namespaced_secret,
                namespace=self.namespace,
                field_selector=self._field_selector,
                resource_version=resource_version,
                timeout_seconds=self.watch_timeout_seconds,
            ):
                if stop_event.is_set():
                    return False
                if event.get("object") is None:
                    LOGGER.warning("Secret watch event without object; ignoring")
                    continue
                LOGGER.info(
                    "%s source secret %s/%s", event.get("type"), self.namespace, self.secret_name
                )
                self.changes.mark()
                return True
        finally:
            watcher.stop()
            with self._watcher_lock:
                if self._active_watcher is watcher:
                    self._active_watcher = None
        return False

    def run_forever(self, stop_event: threading.Event) -> None:
        backoff_seconds = 1
        while not stop_event.is_set():
            try:
                self.watch_once(stop_event)
                backoff_seconds = 1
            except (ApiException, TransientAPIError) as exc:
                LOGGER.error("Source secret watch failed: %s; retrying", exc)
            except Exception:
                LOGGER.exception("Unexpected source secret watch error")
            else:
                continue

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop_event.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)

    def stop(self) -> None:
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()
