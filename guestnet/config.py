"""Configuration management for the guest network provisioner."""

import os
import re
from pathlib import Path
from typing import Optional, Dict, List

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from dotenv import load_dotenv


def _expand_single(v: Optional[str]) -> Optional[str]:
    """Expand a value that is exactly ``${VAR}``."""
    if v and v.startswith("${") and v.endswith("}"):
        return os.getenv(v[2:-1], "")
    return v


class LoginCredentials(BaseModel):
    """A username/password pair for the router API."""
    username: str = "admin"
    password: str = ""

    @field_validator("password", mode="before")
    @classmethod
    def expand_env_var(cls, v: str) -> str:
        """Expand environment variables in password."""
        return _expand_single(v)


class DeviceConfig(BaseModel):
    """RouterOS API connection settings."""
    host: str = "192.168.88.1"
    port: int = Field(default=8728, ge=1, le=65535)
    username: str = "admin"
    password: str = ""
    use_fallback_logins: bool = True  # Also try admin/blank, admin/admin
    alternate_credentials: List[LoginCredentials] = Field(default_factory=list)
    login_method: str = "plain"  # "plain" (RouterOS >= 6.43) or "challenge" (legacy MD5)
    connect_timeout: float = Field(default=3.0, gt=0, le=60)
    read_timeout: float = Field(default=3.0, gt=0, le=120)
    write_timeout: float = Field(default=3.0, gt=0, le=60)
    retry_attempts: int = Field(default=2, ge=1, le=10)
    operation_deadline: float = Field(default=30.0, gt=0, le=600)

    @field_validator("password", mode="before")
    @classmethod
    def expand_env_var(cls, v: str) -> str:
        """Expand environment variables in password."""
        return _expand_single(v)

    @field_validator("login_method")
    @classmethod
    def check_login_method(cls, v: str) -> str:
        v = v.lower()
        if v not in ("plain", "challenge"):
            raise ValueError(f"login_method must be 'plain' or 'challenge', got '{v}'")
        return v


class AccessProfile(BaseModel):
    """Bandwidth/timeout policy mirrored as a hotspot user profile."""
    name: str = ""
    display_name: Optional[str] = None
    rate_limit: str = "10M/2M"  # download/upload
    session_timeout: str = "24:00:00"
    idle_timeout: str = "00:30:00"
    shared_users: int = Field(default=3, ge=1, le=100)

    @field_validator("rate_limit")
    @classmethod
    def check_rate_limit(cls, v: str) -> str:
        if not re.fullmatch(r"\d+[kKMG]?/\d+[kKMG]?", v):
            raise ValueError(f"rate_limit must look like '10M/2M', got '{v}'")
        return v

    @property
    def download(self) -> str:
        return self.rate_limit.split("/", 1)[0]

    @property
    def upload(self) -> str:
        return self.rate_limit.split("/", 1)[1]


def default_profiles() -> Dict[str, AccessProfile]:
    return {
        "hotel-guest": AccessProfile(
            name="hotel-guest",
            display_name="Standard Guest",
            rate_limit="10M/2M",
            session_timeout="24:00:00",
            idle_timeout="00:30:00",
            shared_users=3,
        ),
        "hotel-vip": AccessProfile(
            name="hotel-vip",
            display_name="VIP Guest",
            rate_limit="50M/10M",
            session_timeout="24:00:00",
            idle_timeout="01:00:00",
            shared_users=5,
        ),
        "hotel-staff": AccessProfile(
            name="hotel-staff",
            display_name="Staff",
            rate_limit="20M/5M",
            session_timeout="08:00:00",
            idle_timeout="00:15:00",
            shared_users=1,
        ),
    }


class CredentialsConfig(BaseModel):
    """Guest credential generation settings."""
    password_length: int = Field(default=8, ge=3, le=64)
    username_suffix_digits: int = Field(default=3, ge=1, le=9)
    room_prefix_max: int = Field(default=6, ge=1, le=32)
    generation_retries: int = Field(default=15, ge=1, le=1000)
    reject_sequential_runs: bool = False  # Reject passwords containing 123, 234, ... 789


class GuestsConfig(BaseModel):
    """Guest lifecycle policy."""
    max_time_limit_hours: int = Field(default=168, ge=1, le=8760)  # 7 days
    checkout_hour: int = Field(default=12, ge=0, le=23)
    one_active_per_room: bool = True
    remove_orphans_on_sync: bool = False


class NotificationsConfig(BaseModel):
    """Notification service configuration."""
    slack_webhook: Optional[str] = None
    discord_webhook: Optional[str] = None

    @field_validator("slack_webhook", "discord_webhook", mode="before")
    @classmethod
    def expand_env_var(cls, v: Optional[str]) -> Optional[str]:
        """Expand environment variables."""
        if v and v.startswith("${") and v.endswith("}"):
            return os.getenv(v[2:-1])
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = "/var/log/guestnet.log"
    db: str = "/var/lib/guestnet/guests.db"


class CleanupConfig(BaseModel):
    """Expiry daemon configuration."""
    enabled: bool = True
    interval: int = Field(default=900, ge=30, le=86400)  # seconds


class Config(BaseModel):
    """Main configuration class."""
    device: DeviceConfig = Field(default_factory=DeviceConfig)
    profiles: Dict[str, AccessProfile] = Field(default_factory=default_profiles)
    default_profile: str = "hotel-guest"
    credentials: CredentialsConfig = Field(default_factory=CredentialsConfig)
    guests: GuestsConfig = Field(default_factory=GuestsConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)

    @model_validator(mode="after")
    def check_profiles(self) -> "Config":
        # Profile entries are keyed by their router-side name
        for key, profile in self.profiles.items():
            if not profile.name:
                profile.name = key
        if self.default_profile not in self.profiles:
            raise ValueError(f"default_profile '{self.default_profile}' is not in profiles")
        return self


def expand_env_vars(obj):
    """Recursively expand environment variables in a dict."""
    if isinstance(obj, dict):
        return {k: expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [expand_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        pattern = re.compile(r'\$\{([^}]+)\}')
        def replacer(match):
            return os.getenv(match.group(1), match.group(0))
        return pattern.sub(replacer, obj)
    return obj


def load_config(config_path: str = "config.yaml", env_file: str = ".env") -> Config:
    """Load configuration from YAML file and environment variables.

    Args:
        config_path: Path to the YAML configuration file.
        env_file: Path to the .env file for environment variables.

    Returns:
        Config object with all settings.
    """
    env_path = Path(env_file)
    if env_path.exists():
        load_dotenv(env_path)

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_file, "r") as f:
        raw_config = yaml.safe_load(f) or {}

    return Config(**expand_env_vars(raw_config))
