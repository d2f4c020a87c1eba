"""
Stable caller identity for the embedded client.

The server rate-limits per identity, so the token must survive restarts:
it is generated once and persisted to a small file.
"""

import secrets
import string
import time
from pathlib import Path

from skinscan.core.config import get_settings
from skinscan.core.logging import get_logger

logger = get_logger("client.identity")

_ALPHABET = string.ascii_lowercase + string.digits


def generate_identity() -> str:
    """Build a fresh token: user_<epoch-ms>_<9 random chars>."""
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(9))
    return f"user_{int(time.time() * 1000)}_{suffix}"


class ClientIdentity:
    """Lazily loads, or creates and persists, the caller identity token."""

    def __init__(self, path: str | Path | None = None):
        raw = path if path is not None else get_settings().CLIENT_IDENTITY_FILE
        self.path = Path(raw).expanduser()
        self._token: str | None = None

    @property
    def token(self) -> str:
        if self._token is None:
            self._token = self._load_or_create()
        return self._token

    def _load_or_create(self) -> str:
        try:
            existing = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            existing = ""
        except OSError as exc:
            logger.warning("Could not read client identity from %s: %s", self.path, exc)
            existing = ""
        if existing:
            return existing

        token = generate_identity()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(token, encoding="utf-8")
            logger.info("Created client identity at %s", self.path)
        except OSError as exc:
            # Still usable for this process; it just won't be stable across runs
            logger.warning("Could not persist client identity to %s: %s", self.path, exc)
        return token
