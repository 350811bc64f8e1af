from __future__ import annotations

import os
import re
from pathlib import Path

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import NotFound, ValidationError
from .paths import ProjectPaths
from .settings import Settings, parse_kv_lines

NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_-]*$")
USER_RE = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")
DOMAIN_RE = re.compile(r"^(?=.{1,253}$)([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?)(\.[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?)*$")
TIMESPAN_RE = re.compile(r"^\s*(\d+)\s*(s|sec|secs|m|min|mins|h|hr|hour|hours)?\s*$")

_TIMESPAN_UNITS = {
    None: 1,
    "s": 1,
    "sec": 1,
    "secs": 1,
    "m": 60,
    "min": 60,
    "mins": 60,
    "h": 3600,
    "hr": 3600,
    "hour": 3600,
    "hours": 3600,
}

DEFAULT_HEALTH_INTERVAL = "1min"
DEFAULT_HEALTH_TIMEOUT = 3
DEFAULT_HEALTH_RETRIES = 3

_TRUE = {"yes", "true", "1", "on", "y"}
_FALSE = {"no", "false", "0", "off", "n", ""}


def parse_timespan(value: str) -> int:
    """Seconds in a systemd-style time span such as ``30s``, ``1min`` or ``2h``."""
    m = TIMESPAN_RE.match(value)
    if not m:
        raise ValueError(f"invalid time span {value!r}")
    return int(m.group(1)) * _TIMESPAN_UNITS[m.group(2)]


class HealthCheck(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    interval: str = DEFAULT_HEALTH_INTERVAL
    timeout: int = Field(DEFAULT_HEALTH_TIMEOUT, ge=1, le=300)
    retries: int = Field(DEFAULT_HEALTH_RETRIES, ge=1, le=100)

    @field_validator("path")
    @classmethod
    def _path(cls, v: str) -> str:
        # Keep it a path so the probe can only ever hit the project's own port.
        if not v.startswith("/"):
            raise ValueError("HEALTH_PATH must start with '/'")
        if "://" in v or ".." in v or any(c.isspace() for c in v):
            raise ValueError("HEALTH_PATH must be a simple absolute path")
        return v

    @field_validator("interval")
    @classmethod
    def _interval(cls, v: str) -> str:
        if parse_timespan(v) <= 0:
            raise ValueError("HEALTH_INTERVAL must be positive")
        return v.strip()

    @property
    def interval_s(self) -> int:
        return parse_timespan(self.interval)


class ProjectDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    enabled: bool = False
    domain: str | None = None
    port: int | None = Field(None, ge=1, le=65535)
    user: str
    exec: str
    health: HealthCheck | None = None

    @field_validator("name")
    @classmethod
    def _name(cls, v: str) -> str:
        if not NAME_RE.match(v):
            raise ValueError(f"invalid NAME {v!r} (expected {NAME_RE.pattern})")
        return v

    @field_validator("domain")
    @classmethod
    def _domain(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip().lower().rstrip(".")
        if not v:
            return None
        if not DOMAIN_RE.match(v):
            raise ValueError(f"invalid DOMAIN {v!r}")
        return v

    @field_validator("user")
    @classmethod
    def _user(cls, v: str) -> str:
        if not USER_RE.match(v):
            raise ValueError(f"invalid USER {v!r}")
        return v

    @field_validator("exec")
    @classmethod
    def _exec(cls, v: str) -> str:
        if not os.path.isabs(v):
            raise ValueError("EXEC must be an absolute path")
        return v

    @model_validator(mode="after")
    def _port_required(self) -> ProjectDescriptor:
        if self.port is None and (self.enabled or self.domain):
            raise ValueError("PORT is required when ENABLED=yes or DOMAIN is set")
        return self


def default_fields(name: str, settings: Settings) -> dict[str, str]:
    """Fields derived from the project name when the descriptor omits them."""
    return {
        "user": f"svc-{name}",
        "exec": str(Path(settings.apps_root) / name / "current" / name),
    }


def _parse_bool(raw: str, key: str) -> bool:
    v = raw.strip().lower()
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    raise ValueError(f"{key} must be yes or no (got {raw!r})")


def _parse_int(raw: str, key: str) -> int:
    try:
        return int(raw.strip())
    except ValueError:
        raise ValueError(f"{key} must be an integer (got {raw!r})") from None


def _format_error(err: dict) -> str:
    msg = str(err["msg"]).removeprefix("Value error, ")
    loc = ".".join(str(x) for x in err.get("loc", ()))
    return f"{loc}: {msg}" if loc else msg


def descriptor_from_mapping(raw: dict[str, str], settings: Settings) -> ProjectDescriptor:
    """Turn parsed descriptor keys into a validated descriptor with defaults applied."""
    name = raw.get("NAME", "").strip()
    if not name:
        raise ValidationError("missing NAME")

    data: dict[str, object] = {"name": name, **default_fields(name, settings)}
    try:
        if raw.get("ENABLED") is not None:
            data["enabled"] = _parse_bool(raw["ENABLED"], "ENABLED")
        if raw.get("DOMAIN"):
            data["domain"] = raw["DOMAIN"]
        if raw.get("PORT"):
            data["port"] = _parse_int(raw["PORT"], "PORT")
        if raw.get("USER"):
            data["user"] = raw["USER"].strip()
        if raw.get("EXEC"):
            data["exec"] = raw["EXEC"].strip()
        if raw.get("HEALTH_PATH"):
            health: dict[str, object] = {"path": raw["HEALTH_PATH"].strip()}
            if raw.get("HEALTH_INTERVAL"):
                health["interval"] = raw["HEALTH_INTERVAL"]
            if raw.get("HEALTH_TIMEOUT"):
                health["timeout"] = _parse_int(raw["HEALTH_TIMEOUT"], "HEALTH_TIMEOUT")
            if raw.get("HEALTH_RETRIES"):
                health["retries"] = _parse_int(raw["HEALTH_RETRIES"], "HEALTH_RETRIES")
            data["health"] = health
        return ProjectDescriptor(**data)
    except ValueError as e:
        # pydantic.ValidationError is a ValueError; flatten its messages.
        if isinstance(e, pydantic.ValidationError):
            msg = "; ".join(_format_error(err) for err in e.errors())
        else:
            msg = str(e)
        raise ValidationError(msg, project=name) from e


def descriptor_to_text(d: ProjectDescriptor, settings: Settings) -> str:
    defaults = default_fields(d.name, settings)
    lines = [
        f"NAME={d.name}",
        f"ENABLED={'yes' if d.enabled else 'no'}",
        f"DOMAIN={d.domain or ''}",
        f"PORT={d.port if d.port is not None else ''}",
    ]
    if d.user != defaults["user"]:
        lines.append(f"USER={d.user}")
    if d.exec != defaults["exec"]:
        lines.append(f"EXEC={d.exec}")
    if d.health:
        lines += [
            f"HEALTH_PATH={d.health.path}",
            f"HEALTH_INTERVAL={d.health.interval}",
            f"HEALTH_TIMEOUT={d.health.timeout}",
            f"HEALTH_RETRIES={d.health.retries}",
        ]
    else:
        lines += ["# Optional health check", "# HEALTH_PATH=/health"]
    return "\n".join(lines) + "\n"


class DescriptorStore:
    """Read-mostly view of the ``*.conf`` descriptors in the projects directory."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.root = Path(settings.projects_dir)

    def path(self, name: str) -> Path:
        return self.root / f"{name}.conf"

    def env_path(self, name: str) -> Path:
        return self.root / f"{name}.env"

    def names(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.stem for p in self.root.glob("*.conf") if p.is_file())

    def load(self, name: str) -> ProjectDescriptor:
        if not NAME_RE.match(name):
            raise ValidationError(f"invalid project name {name!r}", project=name)
        path = self.path(name)
        if not path.is_file():
            raise NotFound(f"no descriptor at {path}", project=name)
        raw = parse_kv_lines(path.read_text(encoding="utf-8"))
        d = descriptor_from_mapping(raw, self.settings)
        if d.name != name:
            raise ValidationError(f"NAME={d.name} does not match file {path.name}", project=name)
        return d

    def scan(self) -> tuple[list[ProjectDescriptor], dict[str, ValidationError]]:
        """Load every descriptor, splitting out invalid or colliding ones."""
        loaded: list[ProjectDescriptor] = []
        failures: dict[str, ValidationError] = {}
        for name in self.names():
            try:
                loaded.append(self.load(name))
            except ValidationError as e:
                failures[name] = e

        owners: dict[str, str] = {}
        valid: list[ProjectDescriptor] = []
        for d in loaded:
            keys = ProjectPaths.for_project(d.name, self.settings).collision_keys()
            keys.add(f"user:{d.user}")
            clash = sorted(owners[k] for k in keys if k in owners)
            if clash:
                failures[d.name] = ValidationError(
                    f"derived resources collide with project {clash[0]}", project=d.name
                )
                continue
            for k in keys:
                owners[k] = d.name
            valid.append(d)
        return valid, failures

    def list(self) -> list[ProjectDescriptor]:
        return self.scan()[0]

    def check_unique(self, d: ProjectDescriptor) -> None:
        """Reject ``d`` if it would collide with an existing project."""
        keys = ProjectPaths.for_project(d.name, self.settings).collision_keys()
        keys.add(f"user:{d.user}")
        for other in self.list():
            if other.name == d.name:
                continue
            other_keys = ProjectPaths.for_project(other.name, self.settings).collision_keys()
            other_keys.add(f"user:{other.user}")
            if keys & other_keys:
                raise ValidationError(f"derived resources collide with project {other.name}", project=d.name)

    def save(self, d: ProjectDescriptor) -> Path:
        path = self.path(d.name)
        if path.exists():
            raise ValidationError(f"descriptor already exists: {path}", project=d.name)
        self.check_unique(d)
        self.root.mkdir(parents=True, exist_ok=True)
        path.write_text(descriptor_to_text(d, self.settings), encoding="utf-8")
        os.chmod(path, 0o644)
        return path

    def delete(self, name: str) -> None:
        self.path(name).unlink(missing_ok=True)
        self.env_path(name).unlink(missing_ok=True)
