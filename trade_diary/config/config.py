"""
Configuration models for the trade diary.

Uses Pydantic for validation and type safety.
"""
from typing import Literal, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from decimal import Decimal
from pathlib import Path
import os
import re
import yaml

from trade_diary.config.dotenv_loader import load_dotenv_files
from trade_diary.domain.models import SOURCE_IMPORT


class LedgerConfig(BaseSettings):
    """FIFO ledger configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    # Remaining quantities at or below this are treated as zero. Instruments
    # with very small lot sizes may need a finer value.
    dust_epsilon: Decimal = Field(default=Decimal("0.000001"), gt=0, le=Decimal("0.01"))

    # Provenance tag used when ingesting fills without an explicit source
    default_source: str = SOURCE_IMPORT

    @field_validator("dust_epsilon", mode="before")
    @classmethod
    def _coerce_epsilon(cls, v):
        # YAML gives floats; go through str to avoid binary expansion
        if isinstance(v, float):
            return Decimal(str(v))
        return v


class DataConfig(BaseSettings):
    """Storage configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    database_url: str = "sqlite:///data/trades.db"
    echo_sql: bool = False


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None


class SystemConfig(BaseSettings):
    """System metadata."""
    model_config = SettingsConfigDict(extra="ignore")

    name: str = "Trade Diary"
    version: str = "1.0.0"


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    system: SystemConfig = Field(default_factory=SystemConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    data: DataConfig = Field(default_factory=DataConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "prod"] = "dev"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file, expanding ${VAR} / $VAR references."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        raw_content = yaml_path.read_text()

        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))  # Keep original if not found

        expanded_content = pattern.sub(replace_match, raw_content)
        config_dict = yaml.safe_load(expanded_content) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        # DATABASE_URL env always wins over the file
        db_url = os.getenv("DATABASE_URL")
        if db_url:
            config_dict.setdefault("data", {})
            config_dict["data"]["database_url"] = db_url

        return cls(**config_dict)


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml. If None, uses trade_diary/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        pydantic.ValidationError: If configuration validation fails
    """
    load_dotenv_files()

    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    return Config.from_yaml(config_path)
