from typing import Dict, Optional
from enum import Enum, IntEnum
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml
import os

from .exceptions import ConfigError


DEFAULT_MAX_CONNECTION_ATTEMPTS = 1


class ExecutionEnvironment(Enum):
    DEMO = "DEMO"
    LIVE = "LIVE"

    @classmethod
    def parse(cls, value) -> "ExecutionEnvironment":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ConfigError(f"Invalid execution environment: {value}")


class ProtocolVersion(IntEnum):
    """Login protocol version. V1 and V2 share the paired-token handshake."""

    V1 = 1
    V2 = 2
    V3 = 3

    @classmethod
    def parse(cls, value) -> "ProtocolVersion":
        if isinstance(value, cls):
            return value
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            raise ConfigError(f"Invalid session version: {value}")

    @property
    def uses_bearer(self) -> bool:
        return self is ProtocolVersion.V3


class SessionConfig(BaseSettings):
    """
    Read-only configuration consumed by the session and streaming layers.

    Every field can be overridden by an ``IG_``-prefixed environment
    variable (``IG_API_KEY``, ``IG_SESSION_VERSION``, ...). Environment
    values take precedence over the values passed in, so a YAML file can be
    overridden per deployment.

    Attributes
    ----------
    execution_environment : ExecutionEnvironment
        Selects which base URL and account number are active.
    base_url_demo, base_url_live : str
        REST API base URL per environment.
    account_number_demo, account_number_live : str
        Trading account per environment.
    api_key : str
        Sent as ``X-IG-API-KEY`` on every request.
    username, password : str
        Login identifier and secret.
    session_version : ProtocolVersion
        Login handshake to use. Defaults to V2.
    auto_login : bool
        Log in as soon as the client is created.
    streaming_api_max_connection_attempts : int
        Connection budget of the streaming supervisor. Defaults to 1.
    account_number_test : str, optional
        Secondary account used when switching accounts.

    Raises
    ------
    ConfigError
        A required value is missing or a value does not validate.
    """

    model_config = SettingsConfigDict(
        env_prefix="IG_",
        frozen=True,
        extra="ignore",
    )

    api_key: str = Field(min_length=1)
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    base_url_demo: str = Field(min_length=1)
    base_url_live: str = Field(min_length=1)
    account_number_demo: str = Field(min_length=1)
    account_number_live: str = Field(min_length=1)
    execution_environment: ExecutionEnvironment = ExecutionEnvironment.DEMO
    session_version: ProtocolVersion = ProtocolVersion.V2
    auto_login: bool = True
    streaming_api_max_connection_attempts: int = (
        DEFAULT_MAX_CONNECTION_ATTEMPTS
    )
    account_number_test: Optional[str] = None

    def __init__(self, **values):
        try:
            super().__init__(**values)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return env_settings, init_settings

    @field_validator("execution_environment", mode="before")
    @classmethod
    def _parse_environment(cls, value):
        return ExecutionEnvironment.parse(value)

    @field_validator("session_version", mode="before")
    @classmethod
    def _parse_session_version(cls, value):
        return ProtocolVersion.parse(value)

    @field_validator("streaming_api_max_connection_attempts", mode="before")
    @classmethod
    def _default_attempts(cls, value):
        if value is None:
            return DEFAULT_MAX_CONNECTION_ATTEMPTS
        return value

    @field_validator("streaming_api_max_connection_attempts")
    @classmethod
    def _check_attempts(cls, value: int) -> int:
        if value < 1:
            raise ConfigError(
                "streaming_api_max_connection_attempts must be at least 1"
            )
        return value

    @property
    def base_url(self) -> str:
        if self.execution_environment is ExecutionEnvironment.LIVE:
            return self.base_url_live.rstrip("/")
        return self.base_url_demo.rstrip("/")

    @property
    def account_number(self) -> str:
        if self.execution_environment is ExecutionEnvironment.LIVE:
            return self.account_number_live
        return self.account_number_demo

    def with_environment(self, environment) -> "SessionConfig":
        """Return a copy bound to another execution environment."""
        return self.model_copy(
            update={
                "execution_environment": ExecutionEnvironment.parse(
                    environment
                )
            }
        )

    @classmethod
    def from_dict(cls, data: Dict, env_prefix: str = "IG_") -> "SessionConfig":
        values = {k: v for k, v in data.items() if v is not None}
        return cls(_env_prefix=env_prefix, **values)

    @classmethod
    def from_yaml(
        cls,
        path: str,
        section: str = "IG",
        env_prefix: str = "IG_",
    ) -> "SessionConfig":
        return cls.from_dict(_read_yaml_section(path, section), env_prefix)

    @classmethod
    def from_env(cls, prefix: str = "IG_") -> "SessionConfig":
        return cls(_env_prefix=prefix)


def _read_yaml_section(path: str, section: str) -> Dict:
    if not os.path.exists(path):
        raise ConfigError(f"Configuration file not found: {path}")

    with open(path, "r") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file {path} is not a mapping")

    values = data.get(section)
    if not isinstance(values, dict):
        raise ConfigError(f"'{section}' section not found in {path}")
    return values


def load_config(
    path: Optional[str] = None,
    *,
    section: str = "IG",
    env_prefix: str = "IG_",
) -> SessionConfig:
    """
    Build a SessionConfig from a YAML file and/or environment variables.

    Environment variables override the values read from the file. When
    ``path`` is omitted the ``IG_CONFIG_FILE`` variable is consulted, then
    ``config.yaml`` in the working directory if it exists.
    """
    path = path or os.getenv(f"{env_prefix}CONFIG_FILE")
    if path is None and os.path.exists("config.yaml"):
        path = "config.yaml"

    if path is None:
        return SessionConfig.from_env(env_prefix)
    return SessionConfig.from_yaml(path, section, env_prefix)
