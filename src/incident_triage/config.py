"""Environment configuration and logging setup."""
import logging
import os
from pathlib import Path

from dotenv import load_dotenv


load_dotenv()

ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY")
MODEL = os.getenv("TRIAGE_MODEL", "claude-haiku-4-5")
API_URL = os.getenv("TRIAGE_API_URL", "http://localhost:3001")
DATA_DIR = Path(os.getenv("TRIAGE_DATA_DIR", "data"))
HOST = os.getenv("TRIAGE_HOST", "0.0.0.0")
PORT = int(os.getenv("TRIAGE_PORT", "3001"))
LOG_LEVEL = os.getenv("TRIAGE_LOG_LEVEL", "INFO")
USER_EMAIL = os.getenv("TRIAGE_USER_EMAIL")
EMBEDDING_MODEL = os.getenv("TRIAGE_EMBEDDING_MODEL", "all-MiniLM-L6-v2")

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Configure root logging for the server and CLI entry points."""
    logging.basicConfig(level=(level or LOG_LEVEL).upper(), format=LOG_FORMAT)
