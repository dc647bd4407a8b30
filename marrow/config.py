"""
Configuration models.

Components receive these objects in their constructors. Only ``load_config``
looks at the process environment, and only the CLI and server entry points
call it.
"""

import os
from pathlib import Path
from typing import List, Literal, Optional, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import ConfigError
from .stealth import StealthProfile


DEFAULT_HOME = Path.home() / ".marrow"

DEFAULT_MODELS = {
    "gemini": "gemini-2.0-flash",
    "openai": "gpt-4o-mini",
    "ollama": "llama3.1",
}


class BrowserConfig(BaseModel):
    headless: bool = True
    navigation_timeout_ms: int = 30000
    settle_delay: Tuple[float, float] = (1.0, 3.0)
    scroll_delay: Tuple[float, float] = (0.8, 2.5)
    stealth: StealthProfile = Field(default_factory=StealthProfile)

    @field_validator("settle_delay", "scroll_delay")
    @classmethod
    def ordered_range(cls, v):
        low, high = v
        if low < 0 or high < low:
            raise ValueError("delay range must satisfy 0 <= min <= max")
        return v


class ProviderConfig(BaseModel):
    kind: Literal["gemini", "openai", "ollama"] = "gemini"
    api_key: Optional[str] = None
    model: Optional[str] = None
    base_url: Optional[str] = None
    temperature: float = 0.1
    timeout: float = 60.0
    max_retries: int = 5

    @property
    def model_name(self) -> str:
        return self.model or DEFAULT_MODELS[self.kind]


class RegistryConfig(BaseModel):
    path: Path = DEFAULT_HOME / "registry.db"
    domain_fallback: bool = False


class AuthConfig(BaseModel):
    session_dir: Path = DEFAULT_HOME / "sessions"
    confidence_threshold: float = Field(0.7, ge=0.0, le=1.0)
    escalation_timeout: float = 300.0
    poll_interval: float = 1.0
    fail_on_auth_wall: bool = False


class ApiConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 3000
    rate_limit: int = 100
    allowed_origins: List[str] = ["*"]


class MarrowConfig(BaseModel):
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_config(env_file: Optional[str] = None, require_api_key: bool = True) -> MarrowConfig:
    """Build a MarrowConfig from a .env file and the process environment."""
    load_dotenv(env_file)

    kind = os.getenv("MARROW_PROVIDER", "gemini").strip().lower()
    if kind == "gemini":
        api_key = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_GENERATIVE_AI_API_KEY")
    elif kind == "openai":
        api_key = os.getenv("OPENAI_API_KEY")
    else:
        api_key = None

    if require_api_key and kind != "ollama" and not api_key:
        var = "GEMINI_API_KEY" if kind == "gemini" else "OPENAI_API_KEY"
        raise ConfigError(f"{var} environment variable is required for the {kind} provider")

    origins = os.getenv("ALLOWED_ORIGINS", "*")

    try:
        return MarrowConfig(
            provider=ProviderConfig(
                kind=kind,
                api_key=api_key,
                model=os.getenv("MARROW_MODEL") or None,
                base_url=os.getenv("OLLAMA_URL") if kind == "ollama" else None,
            ),
            browser=BrowserConfig(headless=_env_bool("MARROW_HEADLESS", True)),
            registry=RegistryConfig(
                path=Path(os.getenv("MARROW_REGISTRY_PATH", str(DEFAULT_HOME / "registry.db"))).expanduser(),
                domain_fallback=_env_bool("MARROW_DOMAIN_FALLBACK", False),
            ),
            auth=AuthConfig(
                session_dir=Path(os.getenv("MARROW_SESSION_DIR", str(DEFAULT_HOME / "sessions"))).expanduser(),
            ),
            api=ApiConfig(
                host=os.getenv("HOST", "127.0.0.1"),
                port=int(os.getenv("PORT", "3000")),
                rate_limit=int(os.getenv("RATE_LIMIT", "100")),
                allowed_origins=[o.strip() for o in origins.split(",") if o.strip()] or ["*"],
            ),
        )
    except (ValidationError, ValueError) as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
