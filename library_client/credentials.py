"""Durable storage for the bearer credential."""
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)


class CredentialStore:
    """
    Single-key credential file.

    Holds at most one bearer token under ``access_token``. A missing,
    unreadable or corrupt file reads as "no credential".
    """

    KEY = "access_token"

    def __init__(self, path: Union[str, Path]):
        """
        Args:
            path: Location of the credential file
        """
        self.path = Path(path)

    def load(self) -> Optional[str]:
        """Return the persisted credential, if any."""
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable credential file {self.path}: {e}")
            return None

        token = data.get(self.KEY) if isinstance(data, dict) else None
        if isinstance(token, str) and token:
            return token
        return None

    def save(self, token: str):
        """Persist ``token``, replacing any previous credential."""
        if not token:
            raise ValueError("credential must not be empty")

        self.path.parent.mkdir(parents=True, exist_ok=True)

        # Write to a sibling temp file and swap it in
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".credentials-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump({self.KEY: token}, f)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

        logger.debug(f"Credential saved to {self.path}")

    def clear(self):
        """Remove the persisted credential. Missing file is fine."""
        try:
            self.path.unlink()
            logger.debug(f"Credential removed from {self.path}")
        except FileNotFoundError:
            pass
