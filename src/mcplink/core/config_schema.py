"""Pydantic models for mcplink config files."""

from __future__ import annotations

from typing import Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

CALLBACK_PATH = "/callback"


class ServiceOAuthConfig(BaseModel):
    """OAuth settings for one service.

    Without ``client_id`` the client registers itself dynamically.
    """
    client_id: Optional[str] = Field(None, alias="clientId")
    client_secret: Optional[str] = Field(None, alias="clientSecret")
    scope: Optional[str] = None

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class ServiceConfig(BaseModel):
    """Remote MCP service configuration."""
    url: str
    label: Optional[str] = None
    timeout: float = Field(30.0, gt=0)
    headers: Optional[Dict[str, str]] = None
    oauth: ServiceOAuthConfig = Field(default_factory=ServiceOAuthConfig)

    model_config = ConfigDict(extra="forbid")

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("service url must be http(s)")
        return value

    def display_name(self, name: str) -> str:
        return self.label or name


class CallbackConfig(BaseModel):
    """OAuth callback listener configuration.

    ``host`` is the bind address; ``public_host`` is what appears in the
    redirect URI registered with authorization servers.
    """
    host: str = "127.0.0.1"
    public_host: str = Field("localhost", alias="publicHost")
    port: int = Field(3000, ge=0, le=65535)

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    @property
    def redirect_uri(self) -> str:
        return f"http://{self.public_host}:{self.port}{CALLBACK_PATH}"


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: Optional[str] = None
    format: Optional[Literal["kv", "json", "pretty"]] = None
    console: Optional[bool] = None
    file: Optional[bool] = None
    dev_file: Optional[bool] = Field(None, alias="devFile")

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class Config(BaseModel):
    """Main configuration schema."""
    schema_: Optional[str] = Field(None, alias="$schema")
    services: Dict[str, ServiceConfig] = Field(default_factory=dict)
    callback: CallbackConfig = Field(default_factory=CallbackConfig)
    flow_timeout: float = Field(300.0, alias="flowTimeout", gt=0)
    auth_url_timeout: float = Field(10.0, alias="authUrlTimeout", gt=0)
    tool_cache_ttl: float = Field(3600.0, alias="toolCacheTtl", gt=0)
    retry_delay: float = Field(1.0, alias="retryDelay", ge=0)
    client_name: str = Field("mcplink", alias="clientName")
    logging: Optional[LoggingConfig] = None

    model_config = ConfigDict(extra="forbid", populate_by_name=True)
