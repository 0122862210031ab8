# app/core/config.py
import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv
from pydantic import AnyHttpUrl, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file if it exists
load_dotenv()

logger = logging.getLogger(__name__)

# Key under which the host passes the gate configuration
PLUGIN_NAME = "x402-payment-gate"


class ConfigError(Exception):
    """Raised when the gate configuration is missing or invalid."""


class Settings(BaseSettings):
    PROJECT_NAME: str = "x402 Payment Gate"
    BACKEND_URL: AnyHttpUrl = "http://localhost:8080"
    BACKEND_TIMEOUT_SECONDS: float = 60.0
    LOG_LEVEL: str = "INFO"

    # JSON file holding the host's plugin map, e.g. {"x402-payment-gate": {...}}
    X402_GATE_CONFIG_FILE: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",  # Ignore extra fields from .env
    )


class GateConfig(BaseSettings):
    """
    Static configuration of the payment gate.

    Read once at start-up and never mutated afterwards. Field names match
    the keys the reverse-proxy host uses in its plugin configuration.
    """
    facilitator_url: str = Field(..., min_length=1)
    backend_api_key: str = Field(..., min_length=1)
    payment_header_name: str = Field(..., min_length=1)
    auth_header_name: str = Field(..., min_length=1)
    payment_address: str = Field(..., min_length=1)
    max_amount_required: str = Field(..., pattern=r"^\d+$")  # atomic units
    network: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    asset: str = Field(..., min_length=1)  # token contract address
    max_timeout_seconds: int = Field(300, gt=0)
    mime_type: str = "application/json"

    # EIP-712 domain used by clients when signing the authorization
    extra_name: Optional[str] = "USD for Filecoin Community"
    extra_version: Optional[str] = "1"
    output_schema: Optional[Dict[str, Any]] = None

    facilitator_timeout_seconds: float = Field(30.0, gt=0)

    # Accepts a magic signature without contacting the facilitator. Never
    # enable this in production.
    allow_debug_bypass: bool = False
    debug_bypass_signature: str = "0xDEBUG_BYPASS"

    public_paths: List[str] = ["/health"]
    audit_log_path: Optional[str] = None

    model_config = SettingsConfigDict(
        env_prefix="X402_GATE_",
        env_file=".env",
        extra="ignore",
        frozen=True,
    )

    @property
    def extra(self) -> Optional[Dict[str, str]]:
        if not self.extra_name and not self.extra_version:
            return None
        return {"name": self.extra_name or "", "version": self.extra_version or ""}


def load_gate_config(extra: Optional[Mapping[str, Any]] = None) -> GateConfig:
    """
    Build the gate configuration.

    Args:
        extra: The host's plugin configuration map. The gate's settings are
            read from its "x402-payment-gate" key. When omitted, settings are
            read from X402_GATE_* environment variables.

    Returns:
        A validated, immutable GateConfig

    Raises:
        ConfigError: If the configuration is missing or a required field is
            absent or invalid
    """
    raw: Mapping[str, Any] = {}
    if extra is not None:
        if PLUGIN_NAME not in extra:
            raise ConfigError("plugin configuration not found")
        raw = extra[PLUGIN_NAME]
        if not isinstance(raw, Mapping):
            raise ConfigError(f"plugin configuration must be an object, got {type(raw).__name__}")

    try:
        config = GateConfig(**raw)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise ConfigError(f"missing or invalid config fields: {fields}") from e

    if config.allow_debug_bypass:
        logger.warning(
            f"Debug payment bypass is ENABLED (signature {config.debug_bypass_signature!r}); "
            "payments carrying it are forwarded without verification"
        )
    return config


def load_gate_config_file(path: str) -> GateConfig:
    """Load the gate configuration from a JSON file holding the host plugin map."""
    try:
        extra = json.loads(Path(path).read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"could not read gate config file {path}: {e}") from e
    if not isinstance(extra, dict):
        raise ConfigError(f"gate config file {path} must contain a JSON object")
    return load_gate_config(extra)


@lru_cache()  # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()
