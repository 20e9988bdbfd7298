from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable, Sequence
from urllib.parse import quote

import httpx

from asterisk_config.src.config import READINESS_VARIABLE
from asterisk_config.src.errors import (
    ExternalProtocolError,
    FatalReadinessError,
    ModuleBusyError,
    ModuleNotLoadedError,
    ReloadAuthenticationError,
)
from asterisk_config.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

ARI_TIMEOUT_SECONDS = 10.0


class ReloadState(enum.Enum):
    IDLE = "idle"
    PENDING = "pending"
    RELOADING = "reloading"


class ReloadController:
    """Coalesces reload requests into at most one Asterisk reload per interval.

    ``request_reload()`` only flips the state to PENDING.  A background thread
    first waits for Asterisk to report ``ASTERISK_CONFIG_SYSTEM_READY=1`` and
    then, every ``interval_seconds``, runs one reload pass if a request is
    pending.  A pass PUTs each configured module in order and stops at the
    first failure; failed passes are not retried because the next detected
    change requests a new one.

    The state lock guards transitions only and is never held across HTTP
    calls.  A request arriving while a pass runs leaves the state PENDING so
    the next tick picks it up.  While the supervisor holds the controller
    (``hold()`` until ``release()``) the export tree is being rewritten, so
    pending passes wait for the release.
    """

    def __init__(
        self,
        ari_url: str,
        username: str,
        secret: str,
        modules: Sequence[str],
        interval_seconds: float = 5.0,
        readiness_poll_seconds: float = 1.0,
        readiness_timeout_seconds: float = 600.0,
        client: httpx.Client | None = None,
        monotonic_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ari_url = ari_url.rstrip("/")
        self.modules = tuple(modules)
        self.interval_seconds = interval_seconds
        self.readiness_poll_seconds = readiness_poll_seconds
        self.readiness_timeout_seconds = readiness_timeout_seconds
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=ARI_TIMEOUT_SECONDS)
        self.auth = httpx.BasicAuth(username, secret)
        self.monotonic_fn = monotonic_fn

        self.ready = threading.Event()
        self.fatal_error: FatalReadinessError | None = None
        self.reload_passes = 0
        self._state = ReloadState.IDLE
        self._lock = threading.Lock()
        self._pass_finished = threading.Condition(self._lock)
        self._held = False
        self._in_pass = False
        self._thread: threading.Thread | None = None

    @property
    def state(self) -> ReloadState:
        with self._lock:
            return self._state

    def request_reload(self) -> None:
        with self._lock:
            self._state = ReloadState.PENDING

    def hold(self) -> None:
        """Keep reload passes from starting, waiting out one already in flight."""
        with self._lock:
            self._held = True
            while self._in_pass:
                self._pass_finished.wait()

    def release(self) -> None:
        with self._lock:
            self._held = False

    def start(self, stop_event: threading.Event) -> threading.Thread:
        self._thread = threading.Thread(
            target=self.run, args=(stop_event,), name="reload-controller", daemon=True
        )
        self._thread.start()
        return self._thread

    def run(self, stop_event: threading.Event) -> None:
        LOGGER.info("Waiting for Asterisk to be ready...")
        try:
            if not self.wait_until_ready(stop_event):
                return
        except FatalReadinessError as exc:
            self.fatal_error = exc
            LOGGER.error("%s", exc)
            return

        while not stop_event.wait(timeout=self.interval_seconds):
            try:
                self.run_pending()
            except ExternalProtocolError as exc:
                LOGGER.error("Failed to reload module %s: %s", exc.module, exc)

    def check_ready(self) -> bool:
        """Return ``True`` when Asterisk reports the system-ready variable as ``"1"``."""
        try:
            response = self.client.get(
                f"{self.ari_url}/variable",
                params={"variable": READINESS_VARIABLE},
                auth=self.auth,
                headers={"Content-Type": "application/json"},
            )
            value = response.json().get("value")
        except httpx.HTTPError as exc:
            LOGGER.info("Error calling Asterisk: %s", exc)
            return False
        except (ValueError, AttributeError) as exc:
            LOGGER.info("Failed to decode Asterisk response: %s", exc)
            return False
        if value != "1":
            LOGGER.info("Asterisk not ready: %r (status %d)", value, response.status_code)
            return False
        return True

    def wait_until_ready(self, stop_event: threading.Event) -> bool:
        """Poll readiness until Asterisk is up.

        Returns ``False`` if *stop_event* fires first.  Raises
        :class:`FatalReadinessError` once ``readiness_timeout_seconds`` has
        elapsed; a timeout of ``0`` waits forever.
        """
        deadline = (
            self.monotonic_fn() + self.readiness_timeout_seconds
            if self.readiness_timeout_seconds > 0
            else None
        )
        while not stop_event.wait(timeout=self.readiness_poll_seconds):
            if self.check_ready():
                LOGGER.info("Asterisk ready")
                self.ready.set()
                METRICS.asterisk_ready.set(1)
                return True
            if deadline is not None and self.monotonic_fn() >= deadline:
                METRICS.asterisk_ready.set(0)
                raise FatalReadinessError(
                    f"Asterisk did not become ready within {self.readiness_timeout_seconds}s"
                )
        return False

    def run_pending(self) -> bool:
        """Run one reload pass if a reload is pending; return whether a pass ran.

        Returns ``False`` and leaves the request PENDING while held.
        """
        with self._lock:
            if self._held or self._state is not ReloadState.PENDING:
                return False
            self._state = ReloadState.RELOADING
            self._in_pass = True

        try:
            self.reload_all()
        finally:
            with self._lock:
                if self._state is ReloadState.RELOADING:
                    self._state = ReloadState.IDLE
                self._in_pass = False
                self.reload_passes += 1
                self._pass_finished.notify_all()
        return True

    def reload_all(self) -> None:
        LOGGER.info("Reloading Asterisk modules")
        for module in self.modules:
            self.reload_module(module)
        LOGGER.info("Asterisk modules reloaded")

    def reload_module(self, name: str) -> None:
        url = f"{self.ari_url}/modules/{quote(name, safe='')}"
        try:
            response = self.client.put(
                url, auth=self.auth, headers={"Content-Type": "application/json"}
            )
        except httpx.HTTPError as exc:
            METRICS.module_reloads_total.labels(module=name, result="unreachable").inc()
            raise ExternalProtocolError(
                name, f"failed to contact ARI to reload module {name}: {exc}"
            ) from exc

        status = response.status_code
        error: ExternalProtocolError | None
        if status == 204:
            error = None
        elif status == 404:
            error = ModuleNotLoadedError(name, f"module {name} not already loaded")
        elif status == 401:
            error = ReloadAuthenticationError(
                name, f"module {name} failed to reload due to bad authentication"
            )
        elif status == 409:
            error = ModuleBusyError(name, f"module {name} could not be reloaded")
        else:
            error = ExternalProtocolError(
                name, f"module {name} reload failed: {status} {response.reason_phrase}"
            )

        METRICS.module_reloads_total.labels(
            module=name, result="success" if error is None else str(status)
        ).inc()
        if error is not None:
            raise error

    def close(self) -> None:
        if self._owns_client:
            self.client.close()
