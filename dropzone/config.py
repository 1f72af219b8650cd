"""Configuration management for dropzone"""

import json
import os
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

# Base directory for the project
BASE_DIR = Path(__file__).resolve().parent.parent

# Load environment variables from .env file
ENV_FILE = BASE_DIR / ".env"
load_dotenv(ENV_FILE)

# Settings file paths
SETTINGS_FILE = Path(os.environ.get("DROPZONE_SETTINGS_FILE", BASE_DIR / "settings.json"))
SETTINGS_DEFAULT_FILE = BASE_DIR / "settings.default.json"
PYPROJECT_FILE = BASE_DIR / "pyproject.toml"

# Environment variable names for configuration
ENV_MIN_SIZE_BYTES = "DROPZONE_MIN_SIZE_BYTES"
ENV_MAX_SIZE_BYTES = "DROPZONE_MAX_SIZE_BYTES"
ENV_MAX_FILES = "DROPZONE_MAX_FILES"
ENV_ACCEPT = "DROPZONE_ACCEPT"
ENV_PREVIEW_TYPES = "DROPZONE_PREVIEW_TYPES"
ENV_UPLOAD_URL = "DROPZONE_UPLOAD_URL"
ENV_AWS_PROFILE = "DROPZONE_AWS_PROFILE"
ENV_AWS_REGION = "DROPZONE_AWS_REGION"
ENV_S3_BUCKET = "DROPZONE_S3_BUCKET"
ENV_LOG_DIRECTORY = "DROPZONE_LOG_DIRECTORY"

PREVIEW_TYPES = ("image", "audio", "video")

# Keys whose environment values must be parsed as integers
_INT_KEYS = {"min_size_bytes", "max_size_bytes", "max_files"}


def get_package_version() -> str:
    """Get the package version from pyproject.toml."""
    try:
        with open(PYPROJECT_FILE, "rb") as f:
            pyproject = tomllib.load(f)
        return str(pyproject.get("project", {}).get("version", "0.0.0"))
    except Exception:
        return "0.0.0"


def get_package_name() -> str:
    """Get the package name from pyproject.toml."""
    try:
        with open(PYPROJECT_FILE, "rb") as f:
            pyproject = tomllib.load(f)
        return str(pyproject.get("project", {}).get("name", "dropzone-uploader"))
    except Exception:
        return "dropzone-uploader"


@dataclass(frozen=True)
class DropzoneOptions:
    """Acceptance policy and presentation flags for a FileLifecycleManager.

    ``can_cancel``/``can_remove``/``can_restart`` are policy for the
    presentation layer; the manager itself does not enforce them.
    """

    min_size_bytes: int = 0
    max_size_bytes: int = sys.maxsize
    max_files: int = sys.maxsize
    accept: str = "*"
    preview_types: frozenset[str] = field(default_factory=lambda: frozenset(PREVIEW_TYPES))
    can_cancel: bool = True
    can_remove: bool = True
    can_restart: bool = True

    def __post_init__(self) -> None:
        unknown = set(self.preview_types) - set(PREVIEW_TYPES)
        if unknown:
            raise ValueError(f"Unknown preview types: {sorted(unknown)}")
        # Accept any iterable from callers but store a frozenset
        object.__setattr__(self, "preview_types", frozenset(self.preview_types))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "min_size_bytes": self.min_size_bytes,
            "max_size_bytes": self.max_size_bytes,
            "max_files": self.max_files,
            "accept": self.accept,
            "preview_types": sorted(self.preview_types),
            "can_cancel": self.can_cancel,
            "can_remove": self.can_remove,
            "can_restart": self.can_restart,
        }


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
        2. settings.json (site overrides)
        3. settings.default.json (template defaults)
        4. Hardcoded defaults
        """
        defaults: dict[str, Any] = {
            "min_size_bytes": 0,
            "max_size_bytes": sys.maxsize,
            "max_files": sys.maxsize,
            "accept": "*",
            "preview_types": list(PREVIEW_TYPES),
            "can_cancel": True,
            "can_remove": True,
            "can_restart": True,
            "upload_url": "",
            "aws_profile": "default",
            "aws_region": "us-west-2",
            "s3_bucket": "",
            "log_directory": str(BASE_DIR / "logs"),
        }

        if SETTINGS_DEFAULT_FILE.exists():
            with open(SETTINGS_DEFAULT_FILE, encoding="utf-8") as f:
                defaults.update(json.load(f))

        if SETTINGS_FILE.exists():
            with open(SETTINGS_FILE, encoding="utf-8") as f:
                defaults.update(json.load(f))

        env_overrides = {
            "min_size_bytes": os.environ.get(ENV_MIN_SIZE_BYTES),
            "max_size_bytes": os.environ.get(ENV_MAX_SIZE_BYTES),
            "max_files": os.environ.get(ENV_MAX_FILES),
            "accept": os.environ.get(ENV_ACCEPT),
            "preview_types": os.environ.get(ENV_PREVIEW_TYPES),
            "upload_url": os.environ.get(ENV_UPLOAD_URL),
            "aws_profile": os.environ.get(ENV_AWS_PROFILE),
            "aws_region": os.environ.get(ENV_AWS_REGION),
            "s3_bucket": os.environ.get(ENV_S3_BUCKET),
            "log_directory": os.environ.get(ENV_LOG_DIRECTORY),
        }

        # Only apply non-None environment values
        for key, value in env_overrides.items():
            if value is None:
                continue
            if key in _INT_KEYS:
                defaults[key] = int(value)
            elif key == "preview_types":
                defaults[key] = [t.strip() for t in value.split(",") if t.strip()]
            else:
                defaults[key] = value

        self._settings = defaults

    def dropzone_options(self) -> DropzoneOptions:
        """Build the manager options from the current settings."""
        return DropzoneOptions(
            min_size_bytes=int(self._settings["min_size_bytes"]),
            max_size_bytes=int(self._settings["max_size_bytes"]),
            max_files=int(self._settings["max_files"]),
            accept=str(self._settings["accept"]),
            preview_types=frozenset(self._settings["preview_types"]),
            can_cancel=bool(self._settings["can_cancel"]),
            can_remove=bool(self._settings["can_remove"]),
            can_restart=bool(self._settings["can_restart"]),
        )

    @property
    def upload_url(self) -> str:
        """Get the fixed upload destination URL, if any."""
        return str(self._settings.get("upload_url", ""))

    @property
    def aws_profile(self) -> str:
        """Get the AWS profile name."""
        return str(self._settings.get("aws_profile", "default"))

    @property
    def aws_region(self) -> str:
        """Get the AWS region."""
        return str(self._settings.get("aws_region", "us-west-2"))

    @property
    def s3_bucket(self) -> str:
        """Get the S3 bucket name."""
        return str(self._settings.get("s3_bucket", ""))

    @property
    def log_directory(self) -> Path:
        """Get the directory for JSONL event logs."""
        return Path(self._settings.get("log_directory", BASE_DIR / "logs"))


def get_settings() -> Settings:
    """Get the singleton Settings instance."""
    return Settings()
