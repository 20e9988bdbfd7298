from __future__ import annotations

import contextlib
import logging
import os
import shutil
import tempfile
import zipfile
from collections.abc import Iterator
from urllib.parse import urlsplit

import httpx
from kubernetes.client import CoreV1Api

from asterisk_config.src.config import SOURCE_SECRET_KEY, DownloadAuth
from asterisk_config.src.errors import SourceError
from asterisk_config.src.kube import read_secret_payload

LOGGER = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT_SECONDS = 60.0


def is_url(source: str) -> bool:
    return urlsplit(source).scheme.lower() in {"http", "https"}


def write_secret_archive(
    core_api: CoreV1Api,
    namespace: str,
    secret_name: str,
    archive_path: str,
    timeout_seconds: float,
) -> str:
    """Copy the archive stored in a Secret to *archive_path* and return the path."""
    payload = read_secret_payload(
        core_api, namespace, secret_name, SOURCE_SECRET_KEY, timeout_seconds
    )
    directory = os.path.dirname(archive_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(archive_path, "wb") as handle:
        handle.write(payload)
    LOGGER.info(
        "Wrote %d byte source archive from secret %s/%s", len(payload), namespace, secret_name
    )
    return archive_path


def download_source(
    url: str,
    auth: DownloadAuth | None = None,
    client: httpx.Client | None = None,
) -> str:
    """Download *url* to a temporary file and return its path.

    The caller owns the returned file.  A non-2xx status or an empty body is
    an error; the partial temporary file is removed on any failure.
    """
    auth = auth or DownloadAuth()
    headers: dict[str, str] = {}
    if auth.authorization:
        headers["Authorization"] = auth.authorization
    basic_auth = (auth.username, auth.password or "") if auth.username else None

    owns_client = client is None
    http = client or httpx.Client(timeout=DOWNLOAD_TIMEOUT_SECONDS, follow_redirects=True)
    handle = tempfile.NamedTemporaryFile(prefix="config-download", suffix=".zip", delete=False)
    written = 0
    try:
        with handle, http.stream("GET", url, headers=headers, auth=basic_auth) as response:
            if not response.is_success:
                raise SourceError(
                    f"request failed: {response.status_code} {response.reason_phrase}"
                )
            for chunk in response.iter_bytes():
                handle.write(chunk)
                written += len(chunk)
        if written < 1:
            raise SourceError("empty response")
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        os.unlink(handle.name)
        raise SourceError(f"failed to download source: {exc}") from exc
    except BaseException:
        os.unlink(handle.name)
        raise
    finally:
        if owns_client:
            http.close()

    LOGGER.info("Downloaded %d byte source archive", written)
    return handle.name


@contextlib.contextmanager
def local_archive(
    source: str,
    auth: DownloadAuth | None = None,
    client: httpx.Client | None = None,
) -> Iterator[str]:
    """Yield a local path for *source*, downloading URLs to a temporary file first."""
    if not is_url(source):
        yield source
        return

    path = download_source(source, auth=auth, client=client)
    try:
        yield path
    finally:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(path)


def clear_directory(path: str, preserve: frozenset[str] = frozenset()) -> None:
    """Remove every top-level entry under *path* except the names in *preserve*."""
    if not os.path.isdir(path):
        return
    with os.scandir(path) as entries:
        for entry in entries:
            if entry.name in preserve:
                continue
            if entry.is_dir(follow_symlinks=False):
                shutil.rmtree(entry.path)
            else:
                os.unlink(entry.path)


def extract_archive(archive_path: str, destination: str) -> int:
    """Extract a zip archive into *destination* and return the number of files written.

    Directory entries create directories; file entries overwrite existing
    files.  Entries that would land outside *destination* are rejected.
    """
    root = os.path.realpath(destination)
    files = 0
    try:
        archive = zipfile.ZipFile(archive_path)
    except FileNotFoundError as exc:
        raise SourceError(f"source archive {archive_path} does not exist") from exc
    except zipfile.BadZipFile as exc:
        raise SourceError(f"failed to open source archive {archive_path}: {exc}") from exc

    with archive:
        for info in archive.infolist():
            target = os.path.realpath(os.path.join(root, info.filename))
            if target != root and not target.startswith(root + os.sep):
                raise SourceError(f"archive entry {info.filename!r} escapes {destination}")
            if info.is_dir():
                os.makedirs(target, exist_ok=True)
                continue
            os.makedirs(os.path.dirname(target), exist_ok=True)
            try:
                with archive.open(info) as src, open(target, "wb") as dst:
                    shutil.copyfileobj(src, dst)
            except (zipfile.BadZipFile, OSError) as exc:
                raise SourceError(f"failed to extract {info.filename}: {exc}") from exc
            files += 1
    return files
