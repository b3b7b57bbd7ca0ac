"""
Settings for the AppEngine data access layer, read from a YAML file.
"""

import yaml
from pathlib import Path
from typing import Optional
from pydantic import BaseModel, Field, ValidationError, field_validator


CONFIG_SEARCH_PATHS = (
    Path('appengine_config.yaml'),
    Path('config/appengine_config.yaml'),
    Path('../config/appengine_config.yaml'),
)

_LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


class APISettings(BaseModel):
    """Where the APIs live and how to authenticate against them."""
    appengine_url: str = Field(description="Base URL of the AppEngine API")
    realm_management_url: Optional[str] = Field(
        default=None,
        description="Base URL of the Realm Management API, used to fetch interface schemas"
    )
    realm: str = Field(description="Realm the devices belong to")
    token: str = Field(description="Bearer token used to authenticate requests")
    timeout: int = Field(default=30, gt=0, description="Request timeout in seconds")
    user_agent: str = Field(default="appengine-data-client", description="User-Agent header value")


class PaginationSettings(BaseModel):
    """Page sizes used when retrieving datastreams."""
    default_page_size: int = Field(
        default=10000,
        gt=0,
        description="Largest page requested, used when retrieving everything"
    )
    sample_page_size: int = Field(
        default=100,
        gt=0,
        description="Page size for interactive sample retrieval"
    )


class LoggingSettings(BaseModel):
    """Level, format and optional file of the package logger."""
    level: str = Field(default="INFO", description="Name of a standard logging level")
    format: str = Field(default="%(asctime)s %(levelname)-8s %(name)s: %(message)s")
    file: Optional[str] = Field(default=None, description="Also log to this file when set")

    @field_validator('level')
    @classmethod
    def normalize_level(cls, v: str) -> str:
        level = v.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"Invalid log level '{v}', expected one of {', '.join(_LOG_LEVELS)}")
        return level


class AppEngineConfig(BaseModel):
    """Complete configuration of the data access layer."""
    api: APISettings
    pagination: PaginationSettings = Field(default_factory=PaginationSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> 'AppEngineConfig':
        """
        Read and validate a YAML configuration file.

        Raises:
            FileNotFoundError: If config_path does not exist
            ValueError: If the file is not valid YAML or not a valid configuration
        """
        config_path = Path(config_path)
        if not config_path.is_file():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        try:
            raw = yaml.safe_load(config_path.read_text())
        except yaml.YAMLError as e:
            raise ValueError(f"{config_path} is not valid YAML: {e}")

        if not raw:
            raise ValueError(f"{config_path} is empty")

        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            raise ValueError(f"Invalid configuration in {config_path}: {e}")

    @classmethod
    def from_dict(cls, config_dict: dict) -> 'AppEngineConfig':
        return cls.model_validate(config_dict)

    def save_yaml(self, config_path: str | Path) -> None:
        """Write the configuration to config_path with the token redacted."""
        config_path = Path(config_path)
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(mode='json')
        data['api']['token'] = '***REDACTED***'

        config_path.write_text(yaml.safe_dump(data, sort_keys=False))


def load_config(config_path: Optional[str | Path] = None) -> AppEngineConfig:
    """
    Load the configuration from config_path, or from the first file found
    in CONFIG_SEARCH_PATHS.

    Raises:
        FileNotFoundError: If no configuration file can be found
    """
    if config_path is not None:
        return AppEngineConfig.from_yaml(config_path)

    found = next((path for path in CONFIG_SEARCH_PATHS if path.is_file()), None)
    if found is None:
        searched = ', '.join(str(path) for path in CONFIG_SEARCH_PATHS)
        raise FileNotFoundError(
            f"No configuration file found (searched {searched}); "
            "create appengine_config.yaml with the API URL, realm and token"
        )
    return AppEngineConfig.from_yaml(found)
