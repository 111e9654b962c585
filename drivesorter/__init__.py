"""DriveSorter - Application state and configuration."""

import os
from typing import Mapping, Optional

__version__ = "0.1.0"

# Written to each placed document's appProperties as ds_version
PROCESSING_VERSION = "2025-09-07"


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    value = env.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {value!r}")


class DriveSorter:
    """Central configuration for DriveSorter, loaded from environment variables."""

    # Remote file store
    credentials_file: str = "service_account_key.json"

    # Persisted run/config state
    gcs_bucket: Optional[str] = None
    state_dir: str = ".drivesorter-state"

    # Providers
    llm_provider_name: str = "openai"
    openai_model: str = "gpt-4.1"
    mistral_model: str = "mistral-small-latest"
    ocr_provider_name: str = "mistral"
    ocr_timeout_seconds: int = 600
    max_llm_chars: int = 12000

    # Dry-run plan export (NDJSON)
    dry_run_output: Optional[str] = None

    # Logging
    log_level: str = "INFO"
    log_format: str = "console"

    @classmethod
    def configure(cls, environ: Optional[Mapping[str, str]] = None) -> None:
        """Initialize configuration from environment variables."""
        env = os.environ if environ is None else environ

        cls.credentials_file = env.get("GOOGLE_APPLICATION_CREDENTIALS", "service_account_key.json")
        cls.gcs_bucket = env.get("GCS_BUCKET") or None
        cls.state_dir = env.get("STATE_DIR", ".drivesorter-state")

        cls.llm_provider_name = env.get("LLM_PROVIDER", "openai").lower()
        if cls.llm_provider_name not in ("openai", "mistral"):
            raise ValueError("LLM_PROVIDER must be 'openai' or 'mistral'")
        cls.openai_model = env.get("OPENAI_MODEL", "gpt-4.1")
        cls.mistral_model = env.get("MISTRAL_MODEL", "mistral-small-latest")
        cls.ocr_provider_name = env.get("OCR_PROVIDER", "mistral").lower()
        cls.ocr_timeout_seconds = _env_int(env, "OCR_TIMEOUT_SECONDS", 600)
        cls.max_llm_chars = _env_int(env, "MAX_LLM_CHARS", 12000)

        cls.dry_run_output = env.get("DRY_RUN_OUTPUT") or None

        cls.log_level = env.get("LOG_LEVEL", "INFO").upper()
        cls.log_format = env.get("LOG_FORMAT", "console").lower()

    @classmethod
    def llm_model(cls) -> str:
        """Model name of the configured LLM provider."""
        if cls.llm_provider_name == "mistral":
            return cls.mistral_model
        return cls.openai_model
