from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .settings import Settings


@dataclass(frozen=True)
class ProjectPaths:
    """Every host path derived from a project name."""

    name: str
    descriptor: Path
    env_file: Path
    app_dir: Path
    current_dir: Path
    releases_dir: Path
    log_dir: Path
    maintenance_dir: Path
    unit_name: str
    unit_file: Path
    health_service_name: str
    health_service_file: Path
    health_timer_name: str
    health_timer_file: Path
    site_normal: Path
    site_maintenance: Path
    site_provisioning: Path
    site_active: Path
    logrotate_nginx: Path
    logrotate_app: Path
    lock_file: Path
    probe_lock_file: Path

    @classmethod
    def for_project(cls, name: str, settings: Settings) -> ProjectPaths:
        app = Path(settings.apps_root) / name
        systemd = Path(settings.systemd_dir)
        avail = Path(settings.nginx_avail)
        locks = Path(settings.locks_dir)
        return cls(
            name=name,
            descriptor=Path(settings.projects_dir) / f"{name}.conf",
            env_file=Path(settings.projects_dir) / f"{name}.env",
            app_dir=app,
            current_dir=app / "current",
            releases_dir=app / "releases",
            log_dir=Path(settings.log_root) / name,
            maintenance_dir=Path(settings.maintenance_root) / name,
            unit_name=f"{name}.service",
            unit_file=systemd / f"{name}.service",
            health_service_name=f"{name}-health.service",
            health_service_file=systemd / f"{name}-health.service",
            health_timer_name=f"{name}-health.timer",
            health_timer_file=systemd / f"{name}-health.timer",
            site_normal=avail / f"{name}.conf",
            site_maintenance=avail / f"{name}.maintenance.conf",
            site_provisioning=avail / f"{name}.acme.conf",
            site_active=Path(settings.nginx_enabled) / f"{name}.conf",
            logrotate_nginx=Path(settings.logrotate_dir) / f"nginx-{name}",
            logrotate_app=Path(settings.logrotate_dir) / f"app-{name}",
            lock_file=locks / f"{name}.lock",
            probe_lock_file=locks / f"{name}.probe.lock",
        )

    def collision_keys(self) -> set[str]:
        """Names that must be unique across all projects on the host."""
        return {
            f"unit:{self.unit_name}",
            f"unit:{self.health_service_name}",
            f"unit:{self.health_timer_name}",
            f"site:{self.site_normal.name}",
            f"site:{self.site_maintenance.name}",
            f"site:{self.site_provisioning.name}",
            f"logrotate:{self.logrotate_nginx.name}",
            f"logrotate:{self.logrotate_app.name}",
            f"dir:{self.app_dir}",
            f"dir:{self.log_dir}",
        }
