"""
Durable storage for the opaque transport credential blob.

Writes go to a temp file in the same directory, are fsynced and then renamed
over the target, so a crash leaves either the old or the new blob on disk.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)


class CredentialStore:
    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Optional[dict[str, Any]]:
        """Return the stored credentials, or None when missing or corrupted."""
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Credential store unreadable, starting a fresh pairing: {e}")
            return None
        if not isinstance(data, dict):
            logger.warning("Credential store does not hold an object, starting a fresh pairing")
            return None
        return data

    def save(self, credentials: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".creds-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(credentials, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            _unlink_quietly(tmp_name)
            raise
        logger.debug(f"Credentials persisted to {self.path}")

    def clear(self) -> None:
        _unlink_quietly(self.path)
        logger.info("Credentials cleared")


def _unlink_quietly(path) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
