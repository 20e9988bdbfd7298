from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from kubernetes.client import CoreV1Api

from asterisk_config.src.config import Settings
from asterisk_config.src.discovery import Discoverer
from asterisk_config.src.errors import CrashLoopError, FatalReadinessError, WatchFailedError
from asterisk_config.src.metrics import METRICS
from asterisk_config.src.reconciler import Reconciler
from asterisk_config.src.reloader import ReloadController
from asterisk_config.src.resolver import Resolver
from asterisk_config.src.secret_watch import SecretSourceWatcher
from asterisk_config.src.watches import ChangeSignal, WatchRegistry

LOGGER = logging.getLogger(__name__)

# Granularity at which blocking waits re-check shutdown and fatal conditions.
WAIT_SLICE_SECONDS = 1.0


@dataclass
class ShortDeathCounter:
    """Counts consecutive service runs that ended before ``min_runtime_seconds``."""

    max_short_deaths: int = 10
    min_runtime_seconds: float = 60.0
    count: int = 0

    def record(self, runtime_seconds: float) -> bool:
        """Record one finished run; return ``True`` if it was a short death."""
        if runtime_seconds >= self.min_runtime_seconds:
            self.count = 0
            METRICS.short_deaths.set(0)
            return False
        self.count += 1
        METRICS.short_deaths.set(self.count)
        return True

    @property
    def exhausted(self) -> bool:
        return self.count >= self.max_short_deaths


class Supervisor:
    """Owns the render/wait/reload loop and its crash-loop protection.

    ``run_once`` is one service run: a reload controller is started, then each
    iteration builds a fresh resolver and watch registry, runs a full
    reconciliation cycle with reloads held off, requests a reload and blocks until something the
    templates depend on changes.  Any failure ends the run.  ``run_forever``
    restarts runs until too many of them in a row end quickly.
    """

    def __init__(
        self,
        settings: Settings,
        core_api: CoreV1Api,
        discoverer: Discoverer,
        ari_secret: str,
        reconciler: Reconciler | None = None,
        reloader_factory: Callable[[], ReloadController] | None = None,
        monotonic_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.core_api = core_api
        self.discoverer = discoverer
        self.ari_secret = ari_secret
        self.reconciler = reconciler or Reconciler(settings=settings, core_api=core_api)
        self.reloader_factory = reloader_factory or self._build_reloader
        self.monotonic_fn = monotonic_fn
        self.short_deaths = ShortDeathCounter(
            max_short_deaths=settings.max_short_deaths,
            min_runtime_seconds=settings.min_runtime_seconds,
        )
        self.ready = threading.Event()
        self.cycles_completed = 0

    def _build_reloader(self) -> ReloadController:
        return ReloadController(
            ari_url=self.settings.ari_url,
            username=self.settings.ari_username,
            secret=self.ari_secret,
            modules=self.settings.modules,
            interval_seconds=self.settings.reload_interval_seconds,
            readiness_poll_seconds=self.settings.readiness_poll_seconds,
            readiness_timeout_seconds=self.settings.readiness_timeout_seconds,
        )

    def build_resolver(self, changes: ChangeSignal, stop_event: threading.Event) -> Resolver:
        watches = WatchRegistry(
            core_api=self.core_api,
            changes=changes,
            stop_event=stop_event,
            api_timeout_seconds=self.settings.kube_api_timeout_seconds,
            watch_timeout_seconds=self.settings.watch_timeout_seconds,
        )
        return Resolver(
            core_api=self.core_api,
            discoverer=self.discoverer,
            watches=watches,
            default_namespace=self.settings.namespace,
            api_timeout_seconds=self.settings.kube_api_timeout_seconds,
            env_overrides={"ARI_AUTOSECRET": self.ari_secret},
        )

    def _wait_for_change(
        self,
        changes: ChangeSignal,
        reloader: ReloadController,
        shutdown_event: threading.Event,
    ) -> bool:
        """Block until the change signal fires; return ``False`` on shutdown."""
        while not shutdown_event.is_set():
            if reloader.fatal_error is not None:
                raise reloader.fatal_error
            if changes.wait(timeout=WAIT_SLICE_SECONDS):
                error = changes.error
                if error is not None:
                    if isinstance(error, WatchFailedError):
                        raise error
                    raise WatchFailedError(str(error)) from error
                return True
        return False

    def run_once(self, shutdown_event: threading.Event) -> None:
        """Run the service until shutdown or the first failure."""
        run_stop = threading.Event()
        changes = ChangeSignal()
        reloader = self.reloader_factory()
        reloader.start(run_stop)
        secret_watcher: SecretSourceWatcher | None = None

        try:
            while not shutdown_event.is_set():
                changes.clear()
                resolver = self.build_resolver(changes, run_stop)
                try:
                    # Asterisk must not reload against a half-written export tree.
                    reloader.hold()
                    try:
                        self.reconciler.run_cycle(resolver)
                    finally:
                        reloader.release()
                    self.cycles_completed += 1
                    self.ready.set()
                    reloader.request_reload()

                    if secret_watcher is None and self.settings.source_is_secret:
                        secret_watcher = SecretSourceWatcher(
                            core_api=self.core_api,
                            namespace=self.settings.namespace,
                            secret_name=self.settings.secret_source_name,
                            changes=changes,
                            api_timeout_seconds=self.settings.kube_api_timeout_seconds,
                            watch_timeout_seconds=self.settings.watch_timeout_seconds,
                        )
                        secret_watcher.start(run_stop)

                    if not self._wait_for_change(changes, reloader, shutdown_event):
                        return
                    LOGGER.info("Change detected; re-rendering configuration")
                finally:
                    resolver.close()
        finally:
            self.ready.clear()
            run_stop.set()
            if secret_watcher is not None:
                secret_watcher.stop()
            reloader.close()

    def run_forever(self, shutdown_event: threading.Event) -> None:
        """Restart service runs until shutdown, giving up after repeated short runs.

        Raises :class:`CrashLoopError` once ``max_short_deaths`` consecutive runs
        each lasted less than ``min_runtime_seconds``, and lets
        :class:`FatalReadinessError` through untouched: neither is fixed by
        trying again.
        """
        while not shutdown_event.is_set():
            started = self.monotonic_fn()
            LOGGER.info("Running service")
            try:
                self.run_once(shutdown_event)
            except FatalReadinessError:
                raise
            except Exception:
                LOGGER.exception("Service exited")

            if shutdown_event.is_set():
                return

            if not self.short_deaths.record(self.monotonic_fn() - started):
                continue
            LOGGER.warning(
                "Short death %d of %d", self.short_deaths.count, self.short_deaths.max_short_deaths
            )
            if self.short_deaths.exhausted:
                raise CrashLoopError(
                    f"service exited within {self.short_deaths.min_runtime_seconds}s "
                    f"{self.short_deaths.count} times in a row"
                )
            shutdown_event.wait(timeout=self.settings.short_death_backoff_seconds)
