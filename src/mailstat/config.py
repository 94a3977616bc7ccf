"""
Server profiles and settings.

Two profiles ship built in, `gmail` and `bridge` (a local IMAP bridge
speaking STARTTLS on a high port). A YAML file can add profiles or
override fields:

    profile: bridge
    timeout: 20
    retry:
      attempts: 4
      fetch_retries: 3
      base_delay: 1.0
    profiles:
      bridge:
        imap_port: 1144
        naive_timezone: Europe/Paris
"""
import os
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

import yaml
from loguru import logger

from .errors import ConfigError
from .timestamps import zone

DEFAULT_CONFIG = Path("~/.config/mailstat/config.yml")
DEFAULT_PROFILE = "gmail"
DEFAULT_DAYS = 14
DEFAULT_FOLDER = "INBOX"
DEFAULT_TIMEOUT = 30.0


class Security(str, Enum):
    SSL = "ssl"
    STARTTLS = "starttls"
    PLAIN = "plain"


@dataclass(frozen=True)
class ServerProfile:
    name: str
    imap_host: str
    imap_port: int
    security: Security = Security.SSL
    smtp_host: Optional[str] = None
    smtp_port: Optional[int] = None
    # How to read a Date header that carries no offset
    naive_timezone: str = "UTC"
    verify_tls: bool = True


PROFILES = {
    "gmail": ServerProfile(
        name="gmail",
        imap_host="imap.gmail.com",
        imap_port=993,
        security=Security.SSL,
        smtp_host="smtp.gmail.com",
        smtp_port=465,
    ),
    "bridge": ServerProfile(
        name="bridge",
        imap_host="127.0.0.1",
        imap_port=1143,
        security=Security.STARTTLS,
        smtp_host="127.0.0.1",
        smtp_port=1025,
        verify_tls=False,
    ),
}


@dataclass(frozen=True)
class RetrySettings:
    attempts: int = 3
    fetch_retries: int = 3
    base_delay: float = 1.0
    factor: float = 2.0


@dataclass
class Settings:
    profile: str = DEFAULT_PROFILE
    timeout: float = DEFAULT_TIMEOUT
    folder: str = DEFAULT_FOLDER
    retry: RetrySettings = field(default_factory=RetrySettings)
    profiles: Dict[str, ServerProfile] = field(default_factory=lambda: dict(PROFILES))

    def server(self, name: Optional[str] = None) -> ServerProfile:
        name = name or self.profile
        try:
            return self.profiles[name]
        except KeyError:
            raise ConfigError(
                f"unknown profile {name!r}, known: {', '.join(sorted(self.profiles))}"
            ) from None


def _coerce_profile(name: str, raw: dict, base: Optional[ServerProfile]) -> ServerProfile:
    known = {f.name for f in fields(ServerProfile)}
    unknown = set(raw) - known
    if unknown:
        raise ConfigError(f"profiles.{name}: unknown keys {', '.join(sorted(unknown))}")
    values = dict(raw)
    if "security" in values:
        try:
            values["security"] = Security(values["security"])
        except ValueError:
            raise ConfigError(f"profiles.{name}.security: {values['security']!r}") from None
    for key in ("imap_port", "smtp_port"):
        if values.get(key) is not None and not isinstance(values[key], int):
            raise ConfigError(f"profiles.{name}.{key} must be an integer")
    if "naive_timezone" in values:
        if not isinstance(values["naive_timezone"], str):
            raise ConfigError(f"profiles.{name}.naive_timezone must be a zone name")
        zone(values["naive_timezone"])
    if base is not None:
        return replace(base, **values)
    if "imap_host" not in values or "imap_port" not in values:
        raise ConfigError(f"profiles.{name}: imap_host and imap_port are required")
    values["name"] = name
    return ServerProfile(**values)


def _number(raw, key: str, cast, minimum=0, strict=True):
    try:
        value = cast(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be a number, got {raw!r}") from None
    if value < minimum or (strict and value == minimum):
        raise ConfigError(f"{key} is out of range: {value}")
    return value


def parse_settings(raw: Optional[dict]) -> Settings:
    settings = Settings()
    if not raw:
        return settings
    if not isinstance(raw, dict):
        raise ConfigError("configuration must be a mapping")
    for name, values in (raw.get("profiles") or {}).items():
        if not isinstance(values, dict):
            raise ConfigError(f"profiles.{name} must be a mapping")
        settings.profiles[name] = _coerce_profile(name, values, settings.profiles.get(name))
    if "profile" in raw:
        settings.profile = str(raw["profile"])
    if "folder" in raw:
        settings.folder = str(raw["folder"])
    if "timeout" in raw:
        settings.timeout = _number(raw["timeout"], "timeout", float)
    retry = raw.get("retry") or {}
    if retry:
        settings.retry = RetrySettings(
            attempts=_number(retry.get("attempts", 3), "retry.attempts", int),
            fetch_retries=_number(
                retry.get("fetch_retries", 3), "retry.fetch_retries", int, strict=False
            ),
            base_delay=_number(retry.get("base_delay", 1.0), "retry.base_delay", float, strict=False),
            factor=_number(retry.get("factor", 2.0), "retry.factor", float, minimum=1, strict=False),
        )
    settings.server()
    return settings


def load_settings(path: Optional[Path] = None) -> Settings:
    "Settings from `path`, or the default file when it exists"
    explicit = path is not None
    path = Path(os.path.expanduser(path or DEFAULT_CONFIG))
    if not path.exists():
        if explicit:
            raise ConfigError(f"configuration file {path} not found")
        return Settings()
    logger.debug("Reading configuration {}", path)
    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"{path}: {e}") from e
    return parse_settings(raw)
