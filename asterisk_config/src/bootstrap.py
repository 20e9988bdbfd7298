from __future__ import annotations

import logging
import os
import secrets
import string

from asterisk_config.src.config import SECRET_FILENAME, Settings
from asterisk_config.src.errors import ConfigError

LOGGER = logging.getLogger(__name__)

_SECRET_ALPHABET = string.ascii_letters + string.digits
SECRET_LENGTH = 22


def generate_secret(length: int = SECRET_LENGTH) -> str:
    return "".join(secrets.choice(_SECRET_ALPHABET) for _ in range(length))


def ensure_directories(settings: Settings) -> None:
    """Create the custom and export roots if they do not exist yet."""
    for label, path in (("custom", settings.custom_root), ("export", settings.export_root)):
        try:
            os.makedirs(path, exist_ok=True)
        except OSError as exc:
            raise ConfigError(f"failed to ensure {label} directory {path}: {exc}") from exc


def get_or_create_secret(export_root: str) -> str:
    """Return the persisted ARI secret, generating and persisting one if needed.

    The secret lives in the export root so it survives container restarts
    that share the volume; the render cycle never deletes it.
    """
    secret_path = os.path.join(export_root, SECRET_FILENAME)
    try:
        with open(secret_path, encoding="utf-8") as handle:
            existing = handle.read().strip()
    except FileNotFoundError:
        existing = ""
    if existing:
        return existing

    secret = generate_secret()
    fd = os.open(secret_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(secret)
    LOGGER.info("Generated new ARI secret at %s", secret_path)
    return secret
