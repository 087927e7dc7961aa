"""Configuration for AgencyFlow.

Settings come from ``AGENCYFLOW_*`` variables: the process environment
first, then a ``.env`` file in the working directory, then defaults.

Usage:
    from src.core.config import get_config, validate_config

    config = get_config()
    for issue in validate_config(config):
        print(issue)

Issues starting with ``CRITICAL:`` stop the scheduler from starting.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from src.core.exceptions import ConfigurationError

AGENCYFLOW_HOME = Path.home() / ".agencyflow"
DEFAULT_DB_PATH = AGENCYFLOW_HOME / "agencyflow.db"
DEFAULT_LOG_PATH = AGENCYFLOW_HOME / "logs"

DEFAULT_DAILY_RUN_HOUR = 6
DEFAULT_REFRESH_INTERVAL_MINUTES = 60
DEFAULT_SEND_INTERVAL_MINUTES = 30
DEFAULT_RUN_LOCK_TTL_MINUTES = 25

CRITICAL = "CRITICAL:"


@dataclass
class Config:
    """Runtime settings.

    Attributes:
        db_path: SQLite database file
        log_path: Directory for agencyflow.log
        daily_run_hour: UTC hour (0-23) of the full refresh+verify+send cycle
        refresh_interval_minutes: Refresh cadence outside the daily cycle
        send_interval_minutes: Verify+send cadence outside the daily cycle
        run_lock_ttl_minutes: Age after which a held run-lock may be taken over
        email_endpoint: URL the email service accepts messages on
        email_api_key: Bearer key for the email service
        from_email: Sender used when a message names none
        debug: Debug-level console output
        dry_run: Log messages instead of handing them off
    """

    db_path: Path = field(default_factory=lambda: DEFAULT_DB_PATH)
    log_path: Path = field(default_factory=lambda: DEFAULT_LOG_PATH)

    daily_run_hour: int = DEFAULT_DAILY_RUN_HOUR
    refresh_interval_minutes: int = DEFAULT_REFRESH_INTERVAL_MINUTES
    send_interval_minutes: int = DEFAULT_SEND_INTERVAL_MINUTES
    run_lock_ttl_minutes: int = DEFAULT_RUN_LOCK_TTL_MINUTES

    email_endpoint: Optional[str] = None
    email_api_key: Optional[str] = None
    from_email: Optional[str] = None

    debug: bool = False
    dry_run: bool = False


# =============================================================================
# Loading
# =============================================================================


def load_env_file(path: Path) -> dict[str, str]:
    """Read ``KEY=VALUE`` lines from a .env file.

    Blank lines and ``#`` comments are skipped; one layer of matching
    quotes is stripped from values. A missing file yields ``{}``.
    """
    if not path.exists():
        return {}

    values: dict[str, str] = {}
    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        key, value = key.strip(), value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        if key:
            values[key] = value
    return values


def _as_path(key: str, raw: str) -> Path:
    return Path(raw).expanduser().resolve()


def _as_str(key: str, raw: str) -> Optional[str]:
    return raw or None


def _as_bool(key: str, raw: str) -> bool:
    return raw.lower() in ("true", "1", "yes", "on")


def _as_int(key: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}") from e


# Variable name, Config attribute, parser
_ENV_FIELDS: tuple[tuple[str, str, Callable[[str, str], Any]], ...] = (
    ("AGENCYFLOW_DB_PATH", "db_path", _as_path),
    ("AGENCYFLOW_LOG_PATH", "log_path", _as_path),
    ("AGENCYFLOW_DAILY_RUN_HOUR", "daily_run_hour", _as_int),
    ("AGENCYFLOW_REFRESH_INTERVAL_MINUTES", "refresh_interval_minutes", _as_int),
    ("AGENCYFLOW_SEND_INTERVAL_MINUTES", "send_interval_minutes", _as_int),
    ("AGENCYFLOW_RUN_LOCK_TTL_MINUTES", "run_lock_ttl_minutes", _as_int),
    ("AGENCYFLOW_EMAIL_ENDPOINT", "email_endpoint", _as_str),
    ("AGENCYFLOW_EMAIL_API_KEY", "email_api_key", _as_str),
    ("AGENCYFLOW_FROM_EMAIL", "from_email", _as_str),
    ("AGENCYFLOW_DEBUG", "debug", _as_bool),
    ("AGENCYFLOW_DRY_RUN", "dry_run", _as_bool),
)


def load_config(env_file: Optional[Path] = None) -> Config:
    """Build a Config from the environment and ``env_file`` (default ./.env).

    Unset and empty variables keep the dataclass default.

    Raises:
        ConfigurationError: A numeric variable does not parse
    """
    file_values = load_env_file(Path(env_file) if env_file else Path.cwd() / ".env")

    overrides: dict[str, Any] = {}
    for key, attr, parse in _ENV_FIELDS:
        raw = os.environ.get(key) or file_values.get(key)
        if raw:
            overrides[attr] = parse(key, raw)
    return Config(**overrides)


# =============================================================================
# Validation
# =============================================================================


def _check_writable_dir(label: str, directory: Path) -> Optional[str]:
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        return f"Cannot create {label} directory {directory}: {e}"
    if not os.access(directory, os.W_OK):
        return f"{label.capitalize()} directory not writable: {directory}"
    return None


def _schedule_issues(config: Config) -> list[str]:
    issues = []
    if not 0 <= config.daily_run_hour <= 23:
        issues.append(
            f"{CRITICAL} AGENCYFLOW_DAILY_RUN_HOUR must be 0-23, got {config.daily_run_hour}"
        )
    for key, minutes in (
        ("AGENCYFLOW_REFRESH_INTERVAL_MINUTES", config.refresh_interval_minutes),
        ("AGENCYFLOW_SEND_INTERVAL_MINUTES", config.send_interval_minutes),
    ):
        if minutes < 1:
            issues.append(f"{CRITICAL} {key} must be at least 1")
    return issues


def _email_issues(config: Config) -> list[str]:
    missing = [
        key
        for key, value in (
            ("AGENCYFLOW_EMAIL_ENDPOINT", config.email_endpoint),
            ("AGENCYFLOW_EMAIL_API_KEY", config.email_api_key),
        )
        if not value
    ]
    issues = []
    if missing and config.dry_run:
        issues.append(f"Email service not configured ({', '.join(missing)}); dry-run mode only.")
    elif missing:
        issues.append(
            f"{CRITICAL} Missing email service configuration: {', '.join(missing)}. "
            "Set them or enable AGENCYFLOW_DRY_RUN."
        )
    if not config.from_email:
        issues.append("AGENCYFLOW_FROM_EMAIL not set; templates must supply a sender.")
    return issues


def validate_config(config: Config) -> list[str]:
    """List problems with ``config``, creating its directories on the way.

    Returns:
        Issues, empty when the config is usable
    """
    issues = [
        issue
        for issue in (
            _check_writable_dir("database", config.db_path.parent),
            _check_writable_dir("log", config.log_path),
        )
        if issue
    ]
    issues.extend(_schedule_issues(config))
    issues.extend(_email_issues(config))
    return issues


def critical_issues(issues: list[str]) -> list[str]:
    """Only the issues that stop the scheduler."""
    return [issue for issue in issues if issue.startswith(CRITICAL)]


# =============================================================================
# Singleton
# =============================================================================

_config: Optional[Config] = None


def get_config() -> Config:
    """Load once, then return the cached Config."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Forget the cached Config (tests)."""
    global _config
    _config = None
