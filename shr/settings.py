from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Mapping

from .errors import ValidationError

DEFAULT_CONFIG_PATH = "/etc/shr/shr.conf"
ENV_PREFIX = "SHR_"

TLS_PROFILES = ("modern", "intermediate")
APP_LOG_MODES = ("journal", "file")

_TRUE = {"1", "true", "yes", "y", "on"}


def _env_bool(raw: str | None, default: bool = False) -> bool:
    if raw is None:
        return default
    return raw.strip().lower() in _TRUE


def _env_int(raw: str | None, default: int) -> int:
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(raw: str | None, default: float) -> float:
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def parse_kv_lines(text: str) -> dict[str, str]:
    """Parse ``KEY=value`` lines.

    Blank lines and ``#`` comments are skipped, an ``export`` prefix is
    tolerated and matching surrounding quotes are stripped. Later keys win.
    """
    out: dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        elif " #" in value:
            value = value.split(" #", 1)[0].rstrip()
        out[key] = value
    return out


@dataclass(frozen=True)
class Settings:
    # Roots
    projects_dir: str = "/etc/shr/projects.d"
    apps_root: str = "/srv/apps"
    log_root: str = "/var/log"
    nginx_avail: str = "/etc/nginx/sites-available"
    nginx_enabled: str = "/etc/nginx/sites-enabled"
    templates_dir: str = "/etc/shr/templates"
    maintenance_root: str = "/var/www/maintenance"
    acme_webroot: str = "/var/www/acme"
    letsencrypt_live: str = "/etc/letsencrypt/live"
    systemd_dir: str = "/etc/systemd/system"
    logrotate_dir: str = "/etc/logrotate.d"
    state_dir: str = "/var/lib/shr"
    shr_bin: str = "/usr/local/bin/shr"

    # TLS / Let's Encrypt
    certbot_email: str = ""
    certbot_staging: bool = False
    tls_profile: str = "intermediate"
    app_log_mode: str = "journal"

    # Timeouts
    certbot_timeout_s: int = 180
    command_timeout_s: int = 60
    lock_timeout_s: float = 120.0
    probe_delay_s: float = 1.0

    # Email alerting (optional)
    enable_email: bool = False
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    email_from: str | None = None
    email_to: str | None = None

    # Status API
    api_host: str = "127.0.0.1"
    api_port: int = 8765

    @property
    def db_path(self) -> str:
        return str(Path(self.state_dir) / "shr.db")

    @property
    def locks_dir(self) -> str:
        return str(Path(self.state_dir) / "locks")

    def validate(self) -> Settings:
        if self.tls_profile not in TLS_PROFILES:
            raise ValidationError(f"TLS_PROFILE must be one of {', '.join(TLS_PROFILES)} (got {self.tls_profile!r})")
        if self.app_log_mode not in APP_LOG_MODES:
            raise ValidationError(f"APP_LOG_MODE must be one of {', '.join(APP_LOG_MODES)} (got {self.app_log_mode!r})")
        return self


def _coerce(raw: Mapping[str, str]) -> dict[str, object]:
    out: dict[str, object] = {}
    for f in fields(Settings):
        key = f.name.upper()
        if key not in raw:
            continue
        value = raw[key]
        default = f.default
        if isinstance(default, bool):
            out[f.name] = _env_bool(value, default)
        elif isinstance(default, int):
            out[f.name] = _env_int(value, default)
        elif isinstance(default, float):
            out[f.name] = _env_float(value, default)
        elif default is None:
            out[f.name] = value or None
        else:
            out[f.name] = value
    return out


def load_settings(path: str | None = None, environ: Mapping[str, str] | None = None) -> Settings:
    """Build settings from the config file, then ``SHR_*`` environment overrides.

    A missing config file is fine; every key has a default.
    """
    env = os.environ if environ is None else environ
    config_path = Path(path or env.get(f"{ENV_PREFIX}CONFIG", DEFAULT_CONFIG_PATH))

    raw: dict[str, str] = {}
    if config_path.is_file():
        raw.update(parse_kv_lines(config_path.read_text(encoding="utf-8")))
    for key, value in env.items():
        if key.startswith(ENV_PREFIX) and key != f"{ENV_PREFIX}CONFIG":
            raw[key[len(ENV_PREFIX):]] = value

    return Settings(**_coerce(raw)).validate()  # type: ignore[arg-type]
