"""Local credential file holding the API token and base URL."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_CREDENTIALS_PATH = Path.home() / ".ralphblasterrc"
MAX_CREDENTIALS_FILE_BYTES = 100 * 1024


@dataclass(frozen=True, slots=True)
class Credentials:
    """Stored API credentials."""

    token: str | None
    url: str | None


class CredentialStore:
    """Reads and writes the JSON credential file (mode 0600)."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or DEFAULT_CREDENTIALS_PATH

    def load(self) -> Credentials | None:
        """Return stored credentials, or None when missing or unreadable."""

        if not self.path.exists():
            return None
        try:
            size = self.path.stat().st_size
            if size > MAX_CREDENTIALS_FILE_BYTES:
                logger.warning(
                    "Credential file %s is too large (%d bytes, max %d)",
                    self.path,
                    size,
                    MAX_CREDENTIALS_FILE_BYTES,
                )
                return None
            payload = json.loads(self.path.read_text("utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            logger.warning("Could not read %s: %s", self.path, error)
            return None
        if not isinstance(payload, dict):
            logger.warning("Credential file %s does not contain a JSON object", self.path)
            return None
        token = payload.get("apiToken")
        url = payload.get("apiUrl")
        return Credentials(
            token=token if isinstance(token, str) and token.strip() else None,
            url=url if isinstance(url, str) and url.strip() else None,
        )

    def save(self, token: str, url: str | None = None) -> None:
        """Merge token/url into the credential file, keeping unknown keys."""

        current: dict[str, object] = {}
        if self.path.exists():
            try:
                loaded = json.loads(self.path.read_text("utf-8"))
            except (OSError, json.JSONDecodeError):
                loaded = None
            if isinstance(loaded, dict):
                current = loaded
        current["apiToken"] = token
        if url:
            current["apiUrl"] = url

        self.path.parent.mkdir(parents=True, exist_ok=True)
        descriptor = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(descriptor, "w", encoding="utf-8") as handle:
            json.dump(current, handle, indent=2)
        os.chmod(self.path, 0o600)
