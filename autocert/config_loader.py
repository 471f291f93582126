"""
Configuration loading, validation, and parsing.

Loads settings from a YAML file, layers AUTO_CERT_* environment variables
and explicit overrides on top, and provides typed access to the result.
"""

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .logger import get_logger


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


DEFAULT_CONFIG_PATH = os.path.join("config", "config.yaml")
SUPPORTED_CHALLENGE_TYPES = ("http-01", "dns-01")

# Keys written by older camelCase config files
_KEY_ALIASES = {
    "certsDir": "certs_dir",
    "configDir": "config_dir",
    "webRoot": "web_root",
    "challengeType": "challenge_type",
    "nginxConfDir": "nginx_conf_dir",
    "dnsProvider": "dns_provider",
    "dnsCredentials": "dns_credentials",
    "daysBeforeExpiry": "renew_before_days",
    "logLevel": "log_level",
}

# Environment variable -> settings field
_ENV_OVERRIDES = {
    "AUTO_CERT_EMAIL": "email",
    "AUTO_CERT_STAGING": "staging",
    "AUTO_CERT_CERTS": "certs_dir",
    "AUTO_CERT_CONFIG": "config_dir",
    "AUTO_CERT_WEBROOT": "web_root",
    "AUTO_CERT_NGINX_CONF": "nginx_conf_dir",
    "AUTO_CERT_LOG_LEVEL": "log_level",
}


@dataclass
class Settings:
    """Global settings."""
    email: Optional[str] = None
    staging: bool = False
    certs_dir: str = field(default_factory=lambda: os.path.join(os.getcwd(), "certs"))
    config_dir: str = field(default_factory=lambda: os.path.join(os.getcwd(), "config"))
    web_root: str = "/var/www/html"
    challenge_type: str = "http-01"
    nginx_conf_dir: str = "/etc/nginx/conf.d"
    nginx_test_command: str = "nginx -t"
    nginx_reload_command: str = "nginx -s reload"
    renew_before_days: int = 30
    backup_keep: int = 5
    log_level: str = "info"
    # Certificate key configuration
    key_type: str = "rsa"  # "rsa" or "ecdsa"
    rsa_key_size: int = 2048  # 2048, 3072, or 4096
    elliptic_curve: str = "secp384r1"  # secp256r1 or secp384r1
    # DNS-01 plugin selection
    dns_provider: Optional[str] = None
    dns_credentials: Dict[str, Any] = field(default_factory=dict)


@dataclass
class EmailNotificationConfig:
    """Email notification configuration."""
    enabled: bool = False
    from_email: str = ""
    to_emails: List[str] = field(default_factory=list)


@dataclass
class TeamsNotificationConfig:
    """Teams notification configuration."""
    enabled: bool = False
    webhook_url: Optional[str] = None


@dataclass
class NotificationsConfig:
    """Notification channels configuration."""
    email: EmailNotificationConfig = field(default_factory=EmailNotificationConfig)
    teams: TeamsNotificationConfig = field(default_factory=TeamsNotificationConfig)


@dataclass
class Config:
    """Root configuration object."""
    settings: Settings = field(default_factory=Settings)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)

    @property
    def accounts_dir(self) -> str:
        return os.path.join(self.settings.config_dir, "accounts")

    @property
    def domains_file(self) -> str:
        return os.path.join(self.settings.config_dir, "domains.yaml")

    def domain_dir(self, domain: str) -> str:
        """Directory holding the certificate material of one domain."""
        return os.path.join(self.settings.certs_dir, domain)

    def account_key_path(self, email: str, staging: Optional[bool] = None) -> str:
        """
        Path of the ACME account key for a contact and environment.

        Args:
            email: Contact email of the ACME account
            staging: Environment (defaults to settings.staging)

        Returns:
            Path like <config_dir>/accounts/admin_example_com_prod.pem
        """
        if staging is None:
            staging = self.settings.staging
        safe_email = re.sub(r"[@.]", "_", email)
        env = "staging" if staging else "prod"
        return os.path.join(self.accounts_dir, f"{safe_email}_{env}.pem")


def _expand_env_vars(value: Any) -> Any:
    """
    Expand ${VAR_NAME} references in string values, recursively.

    Unknown variables are left untouched.
    """
    if isinstance(value, str):
        def replace(match):
            return os.environ.get(match.group(1), match.group(0))

        return re.sub(r"\$\{([^}]+)\}", replace, value)

    elif isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}

    elif isinstance(value, list):
        return [_expand_env_vars(item) for item in value]

    return value


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _normalize_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    return {_KEY_ALIASES.get(key, key): value for key, value in data.items()}


def _env_settings() -> Dict[str, Any]:
    """Collect settings overrides from AUTO_CERT_* environment variables."""
    values = {}
    for env_name, key in _ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw is None or raw == "":
            continue
        values[key] = _as_bool(raw) if key == "staging" else raw
    return values


def _parse_settings(data: Dict[str, Any]) -> Settings:
    """
    Build and validate Settings from merged raw values.

    Args:
        data: Raw settings values (file, env and overrides already merged)

    Returns:
        Settings instance

    Raises:
        ConfigurationError: If a value is invalid
    """
    known = {f.name for f in fields(Settings)}
    unknown = sorted(set(data) - known)
    if unknown:
        get_logger().debug(f"Ignoring unknown settings: {', '.join(unknown)}")

    values = {k: v for k, v in data.items() if k in known and v is not None}
    if "staging" in values:
        values["staging"] = _as_bool(values["staging"])
    for int_key in ("renew_before_days", "rsa_key_size", "backup_keep"):
        if int_key in values:
            try:
                values[int_key] = int(values[int_key])
            except (TypeError, ValueError):
                raise ConfigurationError(f"{int_key} must be an integer, got {values[int_key]!r}")
    if "key_type" in values:
        values["key_type"] = str(values["key_type"]).lower()
    if "elliptic_curve" in values:
        values["elliptic_curve"] = str(values["elliptic_curve"]).lower()

    settings = Settings(**values)

    if settings.challenge_type not in SUPPORTED_CHALLENGE_TYPES:
        raise ConfigurationError(
            f"Invalid challenge_type '{settings.challenge_type}'. "
            f"Must be one of: {', '.join(SUPPORTED_CHALLENGE_TYPES)}"
        )
    if settings.renew_before_days < 1:
        raise ConfigurationError("renew_before_days must be at least 1")
    if settings.renew_before_days > 90:
        raise ConfigurationError("renew_before_days should not exceed 90")

    valid_key_types = ["rsa", "ecdsa"]
    if settings.key_type not in valid_key_types:
        raise ConfigurationError(
            f"Invalid key_type '{settings.key_type}'. Must be one of: {', '.join(valid_key_types)}"
        )

    valid_rsa_sizes = [2048, 3072, 4096]
    if settings.rsa_key_size not in valid_rsa_sizes:
        raise ConfigurationError(
            f"Invalid rsa_key_size '{settings.rsa_key_size}'. "
            f"Must be one of: {', '.join(map(str, valid_rsa_sizes))}"
        )

    valid_curves = ["secp256r1", "secp384r1"]
    if settings.elliptic_curve not in valid_curves:
        raise ConfigurationError(
            f"Invalid elliptic_curve '{settings.elliptic_curve}'. Must be one of: {', '.join(valid_curves)}"
        )

    return settings


def _parse_notifications(data: Dict[str, Any]) -> NotificationsConfig:
    """
    Parse notifications configuration.

    Args:
        data: Raw notifications data from YAML

    Returns:
        NotificationsConfig instance
    """
    email_data = data.get("email", {}) or {}
    to_emails = email_data.get("to_emails", [])
    if isinstance(to_emails, str):
        to_emails = [to_emails]

    teams_data = data.get("teams", {}) or {}

    return NotificationsConfig(
        email=EmailNotificationConfig(
            enabled=_as_bool(email_data.get("enabled", False)),
            from_email=email_data.get("from_email", ""),
            to_emails=to_emails,
        ),
        teams=TeamsNotificationConfig(
            enabled=_as_bool(teams_data.get("enabled", False)),
            webhook_url=teams_data.get("webhook_url"),
        ),
    )


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in configuration file: {e}")
    except IOError as e:
        raise ConfigurationError(f"Failed to read configuration file: {e}")

    if raw_data is None:
        return {}
    if not isinstance(raw_data, dict):
        raise ConfigurationError(f"Configuration file must contain a mapping: {path}")
    return raw_data


def load_config(
    config_path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> Config:
    """
    Load and validate configuration.

    Precedence, lowest to highest: built-in defaults, the YAML file,
    AUTO_CERT_* environment variables, explicit overrides (None values in
    overrides are ignored so unset CLI flags do not mask the file).

    Settings may sit at the top level of the file or under a ``settings``
    key; notification channels live under ``notifications``.

    Args:
        config_path: Path to the YAML file. When omitted, config/config.yaml
            is used if it exists.
        overrides: Explicit settings values, typically from CLI flags

    Returns:
        Validated Config instance

    Raises:
        ConfigurationError: If configuration is invalid
    """
    logger = get_logger()

    file_data: Dict[str, Any] = {}
    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")
        if path.suffix not in (".yaml", ".yml"):
            raise ConfigurationError(
                f"Configuration file must be YAML (.yaml or .yml): {config_path}"
            )
        file_data = _read_yaml(path)
        logger.debug(f"Loaded configuration from {config_path}")
    elif Path(DEFAULT_CONFIG_PATH).exists():
        file_data = _read_yaml(Path(DEFAULT_CONFIG_PATH))
        logger.debug(f"Loaded configuration from {DEFAULT_CONFIG_PATH}")

    file_data = _expand_env_vars(file_data)
    notifications_data = file_data.pop("notifications", {}) or {}
    settings_data = file_data.pop("settings", None)
    if settings_data is None:
        settings_data = file_data

    merged = _normalize_keys(dict(settings_data))
    merged.update(_env_settings())
    if overrides:
        merged.update({k: v for k, v in _normalize_keys(overrides).items() if v is not None})

    return Config(
        settings=_parse_settings(merged),
        notifications=_parse_notifications(notifications_data),
    )
