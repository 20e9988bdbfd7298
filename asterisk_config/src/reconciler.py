from __future__ import annotations

import logging
import os
import shutil
import time
from dataclasses import dataclass

import httpx
from kubernetes.client import CoreV1Api

from asterisk_config.src.config import (
    RENDER_FLAG_CONTENT,
    RENDER_FLAG_FILENAME,
    RESERVED_EXPORT_NAMES,
    SECRET_FILENAME,
    TEMPLATE_SUFFIX,
    Settings,
)
from asterisk_config.src.errors import ConfigError, TemplateRenderError
from asterisk_config.src.metrics import METRICS
from asterisk_config.src.resolver import Resolver
from asterisk_config.src.source import (
    clear_directory,
    extract_archive,
    local_archive,
    write_secret_archive,
)
from asterisk_config.src.templates import RenderMode, build_environment, render_template

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class CycleResult:
    """Outcome of one successful reconciliation cycle."""

    files_learned: int
    files_rendered: int
    watches_armed: int
    duration_seconds: float


def _skip_entry(name: str) -> bool:
    # ConfigMap and Secret volumes keep their payload in "..data" / "..<timestamp>" entries.
    return name.startswith("..")


def _read_template(path: str) -> str:
    try:
        with open(path, encoding="utf-8") as handle:
            return handle.read()
    except (OSError, UnicodeDecodeError) as exc:
        raise TemplateRenderError(f"failed to read template {path}: {exc}") from exc


def render_tree(
    resolver: Resolver,
    source_root: str,
    export_root: str,
    mode: RenderMode,
) -> int:
    """Walk *source_root* and mirror it into *export_root*; return the files processed.

    Directories are always mirrored.  In RENDER mode plain files are copied
    byte-for-byte and ``*.tmpl`` files are rendered to the name without the
    suffix.  In LEARN mode nothing is written except directories; templates
    are evaluated only to arm watches.  A missing root contributes no files.
    """
    if not os.path.isdir(source_root):
        LOGGER.warning("Template root %s does not exist; skipping", source_root)
        return 0

    environment = build_environment(resolver)
    processed = 0
    for dirpath, dirnames, filenames in os.walk(source_root):
        dirnames[:] = sorted(d for d in dirnames if not _skip_entry(d))
        relative_dir = os.path.relpath(dirpath, source_root)
        destination_dir = (
            export_root if relative_dir == os.curdir else os.path.join(export_root, relative_dir)
        )
        os.makedirs(destination_dir, exist_ok=True)

        for filename in sorted(f for f in filenames if not _skip_entry(f)):
            source_path = os.path.join(dirpath, filename)
            is_template = filename.endswith(TEMPLATE_SUFFIX)
            output_name = filename[: -len(TEMPLATE_SUFFIX)] if is_template else filename
            if relative_dir == os.curdir and output_name in RESERVED_EXPORT_NAMES:
                raise ConfigError(f"{source_path} would overwrite reserved file {output_name}")
            destination_path = os.path.join(destination_dir, output_name)
            processed += 1

            if not is_template:
                if mode is RenderMode.RENDER:
                    shutil.copyfile(source_path, destination_path)
                continue

            template_name = os.path.relpath(source_path, source_root)
            try:
                template_source = _read_template(source_path)
            except TemplateRenderError as exc:
                if mode is RenderMode.RENDER:
                    raise
                LOGGER.warning("Ignoring error while learning %s: %s", template_name, exc)
                continue
            rendered = render_template(
                template_source,
                resolver,
                mode,
                name=template_name,
                environment=environment,
            )
            if mode is RenderMode.RENDER and rendered is not None:
                with open(destination_path, "w", encoding="utf-8") as handle:
                    handle.write(rendered)

    return processed


class Reconciler:
    """Runs one full clear -> extract -> learn -> render -> mark cycle.

    Every step aborts the cycle on failure; the supervisor decides whether to
    retry.  The export root is cleared before extraction so files dropped from
    a new source archive do not linger, and the completion marker is written
    last so health checks never see a half-rendered tree as complete.
    """

    def __init__(
        self,
        settings: Settings,
        core_api: CoreV1Api,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.settings = settings
        self.core_api = core_api
        self.http_client = http_client

    def _source(self) -> str:
        if not self.settings.source_is_secret:
            return self.settings.source
        if not self.settings.namespace:
            raise ConfigError("POD_NAMESPACE must be set when SECRET_SOURCE_NAME is used")
        return write_secret_archive(
            self.core_api,
            namespace=self.settings.namespace,
            secret_name=self.settings.secret_source_name,
            archive_path=self.settings.secret_archive_path,
            timeout_seconds=self.settings.kube_api_timeout_seconds,
        )

    def _extract(self, source: str) -> None:
        if not source:
            LOGGER.info("No source archive configured; using %s as-is", self.settings.custom_root)
            return
        with local_archive(
            source, auth=self.settings.download_auth, client=self.http_client
        ) as archive_path:
            clear_directory(self.settings.custom_root)
            count = extract_archive(archive_path, self.settings.custom_root)
        LOGGER.info("Extracted %d file(s) into %s", count, self.settings.custom_root)

    def _walk_roots(self, resolver: Resolver, mode: RenderMode) -> int:
        total = 0
        for root in (self.settings.defaults_root, self.settings.custom_root):
            total += render_tree(resolver, root, self.settings.export_root, mode)
        if total < 1:
            raise ConfigError(
                f"no files processed during {mode.value} pass over "
                f"{self.settings.defaults_root} and {self.settings.custom_root}"
            )
        return total

    def run_cycle(self, resolver: Resolver) -> CycleResult:
        started = time.monotonic()
        try:
            source = self._source()
            clear_directory(self.settings.export_root, preserve=frozenset({SECRET_FILENAME}))
            self._extract(source)

            learned = self._walk_roots(resolver, RenderMode.LEARN)
            resolver.mark_first_render_complete()
            resolver.raise_for_watch_failure()

            rendered = self._walk_roots(resolver, RenderMode.RENDER)
            with open(os.path.join(self.settings.export_root, RENDER_FLAG_FILENAME), "wb") as flag:
                flag.write(RENDER_FLAG_CONTENT)
        except Exception:
            METRICS.cycles_total.labels(result="error").inc()
            raise

        duration = time.monotonic() - started
        METRICS.cycles_total.labels(result="success").inc()
        METRICS.cycle_duration_seconds.observe(duration)
        METRICS.files_rendered.set(rendered)
        result = CycleResult(
            files_learned=learned,
            files_rendered=rendered,
            watches_armed=len(resolver.watches.keys()),
            duration_seconds=duration,
        )
        LOGGER.info(
            "Rendered %d file(s) into %s in %.2fs with %d watch(es) armed",
            result.files_rendered,
            self.settings.export_root,
            duration,
            result.watches_armed,
        )
        return result
