"""
Configuration Assembler
=======================

Two layers:
- ClientSettings: process-wide defaults read from KERNEL_SESSION_* environment
  variables (and an optional .env file) through pydantic-settings.
- CoreOptions -> Configuration: per-connection options supplied by the caller,
  deep-merged over the defaults into a frozen snapshot that lives for one
  connection attempt.
"""

from typing import Any, Dict, Literal, Optional, Union
from urllib.parse import urlparse, urlunparse

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    """Environment-driven defaults for the kernel session client."""

    BASE_URL: str = Field(default="http://localhost:8888")
    TOKEN: str = Field(default="")
    KERNEL_NAME: str = Field(default="python3")

    # Seconds to wait for the server readiness signal
    READY_TIMEOUT: float = Field(default=60.0, gt=0)
    # Per-request timeout for REST calls
    REQUEST_TIMEOUT: float = Field(default=15.0, gt=0)
    # None waits for as long as the kernel runs (input() may block indefinitely)
    EXECUTE_TIMEOUT: Optional[float] = Field(default=None, gt=0)
    # Unload-time DELETE request timeout, and how long the unload hook waits for it
    UNLOAD_TIMEOUT: float = Field(default=2.0, gt=0)
    UNLOAD_GRACE: float = Field(default=0.5, ge=0)

    LOG_LEVEL: Literal["debug", "info", "warning", "error", "critical"] = Field(
        default="info"
    )

    model_config = SettingsConfigDict(
        env_prefix="KERNEL_SESSION_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


def get_settings() -> ClientSettings:
    """Build settings from the current environment."""
    return ClientSettings()


# ============================================================================
# CONNECTION OPTIONS
# ============================================================================


class OptionsModel(BaseModel):
    """Immutable option block that rejects unknown fields."""

    model_config = ConfigDict(frozen=True, extra="forbid")


class ServerSettings(OptionsModel):
    """Where the Jupyter server lives and how to authenticate against it."""

    base_url: str = Field(..., description="HTTP(S) root of the Jupyter server")
    ws_url: Optional[str] = Field(
        default=None, description="Websocket root; derived from base_url when unset"
    )
    token: str = Field(default="", description="Server token sent as 'Authorization: token ...'")
    append_token: bool = Field(
        default=False, description="Also pass the token as a query parameter"
    )
    skip_status_check: bool = Field(
        default=False,
        description="Treat the server as ready without probing /api/status",
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v):
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"base_url must be an http(s) URL, got {v!r}")
        return v.rstrip("/")

    def websocket_url(self) -> str:
        if self.ws_url:
            return self.ws_url.rstrip("/")
        parsed = urlparse(self.base_url)
        scheme = "wss" if parsed.scheme == "https" else "ws"
        return urlunparse(parsed._replace(scheme=scheme))

    def auth_headers(self) -> Dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"token {self.token}"}


class KernelOptions(OptionsModel):
    kernel_name: str = "python3"
    path: str = "."


class BinderOptions(OptionsModel):
    repo: str = "binder-examples/requirements"
    ref: str = "master"
    binder_url: str = "https://mybinder.org"
    repo_provider: Literal["github", "gitlab", "git", "gist"] = "github"


class SavedSessionOptions(OptionsModel):
    enabled: bool = False
    max_age: int = Field(default=86400, ge=0)


class MathjaxOptions(OptionsModel):
    url: str = "https://cdnjs.cloudflare.com/ajax/libs/mathjax/2.7.4/MathJax.js"
    config: str = "TeX-AMS_CHTML-full,Safe"


class CoreOptions(OptionsModel):
    """Caller-supplied options. Every block is optional; unset fields keep defaults."""

    server_settings: Optional[ServerSettings] = None
    kernel_options: Optional[KernelOptions] = None
    binder_options: Optional[BinderOptions] = None
    saved_session_options: Optional[SavedSessionOptions] = None
    mathjax: Optional[MathjaxOptions] = None
    ready_timeout: Optional[float] = Field(default=None, gt=0)
    request_timeout: Optional[float] = Field(default=None, gt=0)
    execute_timeout: Optional[float] = Field(default=None, gt=0)


class Configuration(BaseModel):
    """Frozen configuration snapshot for one connection attempt."""

    model_config = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True)

    server_settings: ServerSettings
    kernel_options: KernelOptions
    binder_options: BinderOptions
    saved_session_options: SavedSessionOptions
    mathjax: MathjaxOptions
    ready_timeout: float
    request_timeout: float
    execute_timeout: Optional[float] = None
    # Event channel bound to this configuration (not part of the serialized form)
    events: Any = Field(default=None, exclude=True, repr=False)


def default_options(settings: Optional[ClientSettings] = None) -> CoreOptions:
    """Default connection options: a python3 kernel on the configured server."""
    settings = settings or get_settings()
    return CoreOptions(
        server_settings=ServerSettings(base_url=settings.BASE_URL, token=settings.TOKEN),
        kernel_options=KernelOptions(kernel_name=settings.KERNEL_NAME),
        binder_options=BinderOptions(),
        saved_session_options=SavedSessionOptions(enabled=False),
        mathjax=MathjaxOptions(),
        ready_timeout=settings.READY_TIMEOUT,
        request_timeout=settings.REQUEST_TIMEOUT,
        execute_timeout=settings.EXECUTE_TIMEOUT,
    )


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deep merge two option dicts.

    Nested dicts merge recursively, None in the override never replaces a
    base value, anything else is replaced.
    """
    result = base.copy()
    for key, override_value in override.items():
        if override_value is None:
            continue
        base_value = result.get(key)
        if isinstance(base_value, dict) and isinstance(override_value, dict):
            result[key] = deep_merge(base_value, override_value)
        else:
            result[key] = override_value
    return result


def make_configuration(
    options: Union[CoreOptions, Dict[str, Any], None],
    events: Any = None,
    settings: Optional[ClientSettings] = None,
) -> Configuration:
    """
    Merge caller options over the defaults and bind the event channel.

    Args:
        options: CoreOptions, a plain dict of the same shape, or None
        events: Event channel the configuration (and its consumers) publish on
        settings: Source of defaults; read from the environment when omitted

    Raises:
        pydantic.ValidationError: If the merged options are invalid
    """
    defaults = default_options(settings).model_dump()
    if options is None:
        supplied: Dict[str, Any] = {}
    elif isinstance(options, CoreOptions):
        supplied = options.model_dump(exclude_unset=True)
    else:
        # Plain dicts may be partial at any depth; the merged result is validated below
        supplied = dict(options)

    # A different base_url drops the whole default server block, token included
    server = supplied.get("server_settings")
    if isinstance(server, dict) and server.get("base_url"):
        if str(server["base_url"]).rstrip("/") != defaults["server_settings"]["base_url"]:
            defaults["server_settings"] = {}

    merged = deep_merge(defaults, supplied)
    return Configuration(**merged, events=events)
