"""Configuration management for lecture_uploader"""

import json
import os
import tomllib
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

# Base directory for the project
BASE_DIR = Path(__file__).resolve().parent.parent

# Load environment variables from .env file
ENV_FILE = BASE_DIR / ".env"
load_dotenv(ENV_FILE)

# Settings file paths
SETTINGS_FILE = BASE_DIR / "settings.json"
SETTINGS_DEFAULT_FILE = BASE_DIR / "settings.default.json"
PYPROJECT_FILE = BASE_DIR / "pyproject.toml"

# Environment variable names for configuration
ENV_DATA_DIRECTORY = "LECTURE_UPLOADER_DATA_DIRECTORY"
ENV_LOG_DIRECTORY = "LECTURE_UPLOADER_LOG_DIRECTORY"
ENV_TOKEN_FILE = "LECTURE_UPLOADER_TOKEN_FILE"
ENV_DRIVE_FOLDER_ID = "LECTURE_UPLOADER_DRIVE_FOLDER_ID"
ENV_ANALYSIS_CONCURRENCY = "LECTURE_UPLOADER_ANALYSIS_CONCURRENCY"

# Keys whose values must be coerced to numbers when they come from the environment
_INT_KEYS = {
    "upload_chunk_size",
    "analysis_concurrency",
    "fingerprint_bytes",
    "timestamp_min_year",
    "timestamp_max_year",
}
_FLOAT_KEYS = {"chunk_timeout_seconds", "progress_interval_seconds"}


def get_package_version() -> str:
    """Get the package version from pyproject.toml."""
    try:
        with open(PYPROJECT_FILE, "rb") as f:
            pyproject = tomllib.load(f)
        return str(pyproject.get("project", {}).get("version", "0.0.0"))
    except Exception:
        return "0.0.0"


class Settings:
    """Manages application settings stored in JSON format."""

    _instance: "Settings | None" = None
    _settings: dict[str, Any]

    def __new__(cls) -> "Settings":
        """Singleton pattern to ensure only one settings instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._load_settings()
        return cls._instance

    def _load_settings(self) -> None:
        """Load settings from file, with environment variables taking precedence.

        Priority order (highest to lowest):
        1. Environment variables (from .env file or system)
        2. settings.json (user-saved settings)
        3. settings.default.json (template defaults)
        4. Hardcoded defaults
        """
        # Start with hardcoded defaults
        defaults: dict[str, Any] = {
            "data_directory": str(BASE_DIR / "data"),
            "log_directory": str(BASE_DIR / "logs"),
            "token_file": str(BASE_DIR / "config" / "token.json"),
            "drive_folder_id": "",
            "upload_chunk_size": 5 * 1024 * 1024,
            "chunk_timeout_seconds": 10.0,
            "progress_interval_seconds": 1.0,
            "analysis_concurrency": 2,
            "fingerprint_bytes": 300,
            "timestamp_min_year": 2020,
            "timestamp_max_year": 2030,
        }

        # Load from settings.default.json if it exists
        if SETTINGS_DEFAULT_FILE.exists():
            with open(SETTINGS_DEFAULT_FILE, encoding="utf-8") as f:
                defaults.update(json.load(f))

        # Load from settings.json if it exists
        if SETTINGS_FILE.exists():
            with open(SETTINGS_FILE, encoding="utf-8") as f:
                defaults.update(json.load(f))

        # Override with environment variables (highest priority)
        env_overrides = {
            "data_directory": os.environ.get(ENV_DATA_DIRECTORY),
            "log_directory": os.environ.get(ENV_LOG_DIRECTORY),
            "token_file": os.environ.get(ENV_TOKEN_FILE),
            "drive_folder_id": os.environ.get(ENV_DRIVE_FOLDER_ID),
            "analysis_concurrency": os.environ.get(ENV_ANALYSIS_CONCURRENCY),
        }

        # Only apply non-None environment values
        for key, value in env_overrides.items():
            if value is not None:
                defaults[key] = _coerce(key, value)

        self._settings = defaults

        # Save settings.json if it doesn't exist
        if not SETTINGS_FILE.exists():
            self._save_settings()

    def _save_settings(self) -> None:
        """Save current settings to file."""
        with open(SETTINGS_FILE, "w", encoding="utf-8") as f:
            json.dump(self._settings, f, indent=4)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a setting value by key."""
        return self._settings.get(key, default)

    @property
    def data_directory(self) -> Path:
        """Directory holding caches, session snapshots and manual flags."""
        return Path(self._settings.get("data_directory", BASE_DIR / "data"))

    @property
    def log_directory(self) -> Path:
        """Directory for the JSONL event log."""
        return Path(self._settings.get("log_directory", BASE_DIR / "logs"))

    @property
    def token_file(self) -> Path:
        """Path to the JSON file holding the remote access token."""
        return Path(self._settings.get("token_file", BASE_DIR / "config" / "token.json"))

    @property
    def drive_folder_id(self) -> str:
        """Get the default remote folder for uploads."""
        return str(self._settings.get("drive_folder_id", ""))

    @property
    def upload_chunk_size(self) -> int:
        return int(self._settings.get("upload_chunk_size", 5 * 1024 * 1024))

    @property
    def chunk_timeout_seconds(self) -> float:
        return float(self._settings.get("chunk_timeout_seconds", 10.0))

    @property
    def progress_interval_seconds(self) -> float:
        return float(self._settings.get("progress_interval_seconds", 1.0))

    @property
    def analysis_concurrency(self) -> int:
        """Maximum number of simultaneous external analysis jobs."""
        return max(1, int(self._settings.get("analysis_concurrency", 2)))

    @property
    def fingerprint_bytes(self) -> int:
        return int(self._settings.get("fingerprint_bytes", 300))

    @property
    def timestamp_year_range(self) -> tuple[int, int]:
        """Inclusive range of years accepted for on-screen timestamps."""
        return (
            int(self._settings.get("timestamp_min_year", 2020)),
            int(self._settings.get("timestamp_max_year", 2030)),
        )


def _coerce(key: str, value: str) -> Any:
    if key in _INT_KEYS:
        return int(value)
    if key in _FLOAT_KEYS:
        return float(value)
    return value


def get_settings() -> Settings:
    """Get the singleton Settings instance."""
    return Settings()
