from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from asterisk_config.src.bootstrap import ensure_directories, get_or_create_secret
from asterisk_config.src.config import load_settings
from asterisk_config.src.discovery import get_discoverer
from asterisk_config.src.errors import CrashLoopError, FatalReadinessError
from asterisk_config.src.health import start_health_server
from asterisk_config.src.kube import build_core_client, load_kube_configuration
from asterisk_config.src.metrics import METRICS
from asterisk_config.src.supervisor import Supervisor

RUNTIME_VERSION = "1.0.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)(basic\s+)([A-Za-z0-9+/=]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|autosecret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def main() -> None:
    """Sidecar entrypoint: bootstrap, start the health server, and supervise render cycles."""
    configure_logging()
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    settings = load_settings()
    ensure_directories(settings)
    ari_secret = settings.ari_secret or get_or_create_secret(settings.export_root)

    load_kube_configuration()
    core_api = build_core_client()

    supervisor = Supervisor(
        settings=settings,
        core_api=core_api,
        discoverer=get_discoverer(settings.cloud),
        ari_secret=ari_secret,
    )

    health_server = None
    if settings.health_server_enabled:
        health_server = start_health_server(ready=supervisor.ready, port=settings.health_port)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    exit_code = 0
    try:
        supervisor.run_forever(shutdown_event=shutdown_event)
    except (CrashLoopError, FatalReadinessError) as exc:
        logger.error("asterisk-config exiting: %s", exc)
        exit_code = 1
    finally:
        if health_server is not None:
            health_server.shutdown()

    logger.info("asterisk-config stopped")
    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
