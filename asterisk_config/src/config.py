from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass

from asterisk_config.src.errors import ConfigError

ARI_USERNAME = "k8s-asterisk-config"
SECRET_FILENAME = ".k8s-generated-secret"
RENDER_FLAG_FILENAME = ".asterisk-config"
RENDER_FLAG_CONTENT = b"complete"
SOURCE_SECRET_KEY = "asterisk-config.zip"
TEMPLATE_SUFFIX = ".tmpl"
READINESS_VARIABLE = "ASTERISK_CONFIG_SYSTEM_READY"

# Names in the export root owned by the sidecar itself.
RESERVED_EXPORT_NAMES = frozenset({SECRET_FILENAME, RENDER_FLAG_FILENAME})


@dataclass(frozen=True)
class DownloadAuth:
    """Credentials applied to HTTP(S) source downloads."""

    username: str | None = None
    password: str | None = None
    authorization: str | None = None


@dataclass(frozen=True)
class Settings:
    """Immutable sidecar configuration loaded at startup.

    Attributes:
        cloud:              Network discovery provider (``aws``, ``gcp``, ...).
        source:             Archive path or http(s) URL; empty disables extraction.
        secret_source_name: Secret holding the archive; overrides ``source``.
        namespace:          Pod namespace used when templates omit one.
        modules:            Asterisk modules reloaded after every render.
    """

    cloud: str
    source: str
    secret_source_name: str
    secret_archive_path: str
    namespace: str
    defaults_root: str
    custom_root: str
    export_root: str
    modules: tuple[str, ...]
    ari_url: str
    ari_username: str
    ari_secret: str
    download_auth: DownloadAuth
    reload_interval_seconds: float
    readiness_poll_seconds: float
    readiness_timeout_seconds: float
    kube_api_timeout_seconds: float
    watch_timeout_seconds: int
    min_runtime_seconds: float
    max_short_deaths: int
    short_death_backoff_seconds: float
    health_server_enabled: bool
    health_port: int

    @property
    def source_is_secret(self) -> bool:
        return bool(self.secret_source_name)


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_modules(raw: str) -> tuple[str, ...]:
    """Split a comma-separated module list, dropping blank entries."""
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(
    name: str,
    default: float,
    *,
    minimum: float | None = None,
    env: Mapping[str, str] | None = None,
) -> float:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be a number") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    return value


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Load sidecar settings from the environment.

    Every variable is optional.  ``SECRET_SOURCE_NAME`` takes precedence
    over ``SOURCE``: when it is set the archive is read from that Secret on
    every cycle and ``SOURCE`` is ignored.
    """
    values = env if env is not None else os.environ

    def get(name: str, default: str = "") -> str:
        value = values.get(name)
        return value if value else default

    secret_source_name = get("SECRET_SOURCE_NAME").strip()
    # Unlike the other variables, an explicitly empty SOURCE is meaningful.
    source = values.get("SOURCE", "/source/asterisk-config.zip").strip()
    if secret_source_name:
        source = ""

    modules = parse_modules(get("RELOAD_MODULES", "res_pjsip.so"))
    if not modules:
        raise ConfigError("RELOAD_MODULES must name at least one module")

    export_root = get("EXPORT_DIR", "/etc/asterisk")
    for label, path in (
        ("DEFAULTS_DIR", get("DEFAULTS_DIR", "/defaults")),
        ("CUSTOM_DIR", get("CUSTOM_DIR", "/custom")),
    ):
        if os.path.abspath(path) == os.path.abspath(export_root):
            raise ConfigError(f"{label} must differ from EXPORT_DIR ({export_root})")

    return Settings(
        cloud=get("CLOUD").strip().lower(),
        source=source,
        secret_source_name=secret_source_name,
        secret_archive_path=get(
            "SECRET_ARCHIVE_PATH",
            os.path.join(tempfile.gettempdir(), SOURCE_SECRET_KEY),
        ),
        namespace=get("POD_NAMESPACE").strip(),
        defaults_root=get("DEFAULTS_DIR", "/defaults"),
        custom_root=get("CUSTOM_DIR", "/custom"),
        export_root=export_root,
        modules=modules,
        ari_url=get("ARI_URL", "http://127.0.0.1:8088/ari/asterisk").rstrip("/"),
        ari_username=get("ARI_USERNAME", ARI_USERNAME),
        ari_secret=get("ARI_AUTOSECRET"),
        download_auth=DownloadAuth(
            username=values.get("URL_USERNAME") or None,
            password=values.get("URL_PASSWORD") or None,
            authorization=values.get("URL_AUTHORIZATION") or None,
        ),
        reload_interval_seconds=env_float(
            "RELOAD_INTERVAL_SECONDS", 5.0, minimum=0.1, env=values
        ),
        readiness_poll_seconds=env_float("READINESS_POLL_SECONDS", 1.0, minimum=0.1, env=values),
        readiness_timeout_seconds=env_float(
            "READINESS_TIMEOUT_SECONDS", 600.0, minimum=0.0, env=values
        ),
        kube_api_timeout_seconds=env_float(
            "KUBE_API_TIMEOUT_SECONDS", 10.0, minimum=0.1, env=values
        ),
        watch_timeout_seconds=env_int("WATCH_TIMEOUT_SECONDS", 600, minimum=1, env=values),
        min_runtime_seconds=env_float("MIN_RUNTIME_SECONDS", 60.0, minimum=0.0, env=values),
        max_short_deaths=env_int("MAX_SHORT_DEATHS", 10, minimum=1, env=values),
        short_death_backoff_seconds=env_float(
            "SHORT_DEATH_BACKOFF_SECONDS", 60.0, minimum=0.0, env=values
        ),
        health_server_enabled=parse_bool(values.get("HEALTH_SERVER_ENABLED"), default=True),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
    )
