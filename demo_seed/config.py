"""
Settings and injection configuration loading.

Settings come from the process environment, with a .env file at the project
root (or the default dotenv search path) loaded first.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError

from .exceptions import InjectionConfigError
from .models import InjectionConfig

_env_loaded = False


def load_environment() -> None:
    """Load .env from the project root if present, else the default search."""
    global _env_loaded
    if _env_loaded:
        return
    env_path = os.path.join(os.path.dirname(__file__), '..', '.env')
    if os.path.exists(env_path):
        load_dotenv(env_path)
    else:
        load_dotenv()  # Fallback to default search
    _env_loaded = True


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class SeedSettings(BaseModel):
    bulk_threshold: int = 200
    use_bulk_api: bool = True
    describe_cache_ttl_seconds: float = 600
    bulk_poll_timeout_seconds: float = 300
    bulk_poll_interval_seconds: float = 2
    row_workers: int = 1
    demo_marker: str = "[TestBox Demo Data]"
    api_version: str = "v59.0"
    log_dir: str = "logs"

    @classmethod
    def from_env(cls) -> "SeedSettings":
        load_environment()
        values: Dict[str, Any] = {}
        numeric = {
            "bulk_threshold": "SEED_BULK_THRESHOLD",
            "describe_cache_ttl_seconds": "SEED_DESCRIBE_CACHE_TTL_SECONDS",
            "bulk_poll_timeout_seconds": "SEED_BULK_POLL_TIMEOUT_SECONDS",
            "bulk_poll_interval_seconds": "SEED_BULK_POLL_INTERVAL_SECONDS",
            "row_workers": "SEED_ROW_WORKERS",
        }
        for field_name, env_name in numeric.items():
            if os.getenv(env_name):
                values[field_name] = os.getenv(env_name)
        for field_name, env_name in (("demo_marker", "SEED_DEMO_MARKER"),
                                     ("api_version", "SEED_API_VERSION"),
                                     ("log_dir", "SEED_LOG_DIR")):
            if os.getenv(env_name):
                values[field_name] = os.getenv(env_name)
        values["use_bulk_api"] = _env_bool("SEED_USE_BULK_API", True)
        return cls(**values)


class SalesforceCredentials(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None
    security_token: Optional[str] = None
    domain: Optional[str] = None
    instance_url: Optional[str] = None
    access_token: Optional[str] = None

    @property
    def has_password_login(self) -> bool:
        return all([self.username, self.password, self.security_token])

    @property
    def has_session(self) -> bool:
        return bool(self.instance_url and self.access_token)


def credentials_for(environment: str = "default") -> SalesforceCredentials:
    """
    Read credentials for a named environment.

    "default" uses SALESFORCE_USERNAME etc.; any other name uses
    SALESFORCE_<NAME>_USERNAME etc.
    """
    load_environment()
    prefix = "SALESFORCE_" if environment in ("", "default") else f"SALESFORCE_{environment.upper()}_"
    return SalesforceCredentials(
        username=os.getenv(f"{prefix}USERNAME"),
        password=os.getenv(f"{prefix}PASSWORD"),
        security_token=os.getenv(f"{prefix}SECURITY_TOKEN"),
        domain=os.getenv(f"{prefix}DOMAIN"),
        instance_url=os.getenv(f"{prefix}INSTANCE_URL"),
        access_token=os.getenv(f"{prefix}ACCESS_TOKEN"),
    )


def parse_injection_config(raw: Union[str, bytes, Dict[str, Any], None]) -> InjectionConfig:
    """Parse the environment's injection configuration JSON. Empty means no configuration."""
    if raw is None or raw == "" or raw == b"":
        return InjectionConfig()
    try:
        data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
    except json.JSONDecodeError as e:
        raise InjectionConfigError(f"Injection config is not valid JSON: {e}") from e
    if data is None:
        return InjectionConfig()
    if not isinstance(data, dict):
        raise InjectionConfigError("Injection config must be a JSON object")
    try:
        return InjectionConfig.model_validate(data)
    except ValidationError as e:
        raise InjectionConfigError(f"Invalid injection config: {e}") from e


def load_injection_config(path: Optional[Union[str, Path]]) -> InjectionConfig:
    if not path:
        return InjectionConfig()
    with open(path, 'r', encoding='utf-8') as f:
        return parse_injection_config(f.read())
