"""Configuration management."""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class Config:
    """Application configuration."""

    # Backend
    LIBRARY_API_URL = os.getenv("LIBRARY_API_URL", "http://localhost:8000/api")

    # Credential storage
    CREDENTIAL_FILE = os.getenv(
        "CREDENTIAL_FILE",
        str(Path.home() / ".library_client" / "credentials.json")
    )

    @property
    def credential_path(self) -> Path:
        """Expanded path of the credential file."""
        return Path(self.CREDENTIAL_FILE).expanduser()

    # Lending policy
    MAX_LOAN_DAYS = int(os.getenv("MAX_LOAN_DAYS", "7"))

    # Defaults
    DEFAULT_TIMEOUT = int(os.getenv("DEFAULT_TIMEOUT", "10"))
    DEFAULT_MAX_RETRIES = int(os.getenv("DEFAULT_MAX_RETRIES", "3"))
    DEFAULT_BACKOFF = float(os.getenv("DEFAULT_BACKOFF", "1.0"))
    MAX_CONCURRENT_REQUESTS = int(os.getenv("MAX_CONCURRENT_REQUESTS", "5"))

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
