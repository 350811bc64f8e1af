from __future__ import annotations

from collections import Counter
from pathlib import Path

import pytest

from shr.db import Journal
from shr.descriptors import DescriptorStore
from shr.errors import IssuanceError, ReloadError
from shr.host import Host
from shr.reconciler import Reconciler
from shr.settings import Settings


class FakeHost(Host):
    """Real file operations under tmp_path; users, systemd, nginx and certbot are simulated."""

    def __init__(self, settings: Settings):
        super().__init__(settings)
        self.users: set[str] = set()
        self.active_units: set[str] = set()
        self.enabled_units: set[str] = set()
        self.restarts: Counter[str] = Counter()
        self.systemctl_calls: list[tuple[str, ...]] = []
        self.daemon_reloads = 0
        self.nginx_tests = 0
        self.reloads = 0
        self.nginx_ok = True
        self.issuance_fails = False
        self.issued: list[str] = []

    def user_exists(self, username: str) -> bool:
        return username in self.users

    def create_user(self, username: str, home: str | None) -> None:
        self.users.add(username)
        if home:
            Path(home).mkdir(parents=True, exist_ok=True)

    def delete_user(self, username: str) -> None:
        self.users.discard(username)

    def chown(self, path: Path, owner: str | None, group: str | None = None) -> None:
        return None

    def systemctl(self, *args: str) -> None:
        self.systemctl_calls.append(args)
        if args[0] == "daemon-reload":
            self.daemon_reloads += 1
            return
        unit = args[-1]
        if args[0] == "enable":
            self.enabled_units.add(unit)
            self.active_units.add(unit)
        elif args[0] == "disable":
            self.enabled_units.discard(unit)
            self.active_units.discard(unit)
        elif args[0] == "restart":
            self.restarts[unit] += 1
            self.active_units.add(unit)

    def unit_active(self, unit: str) -> bool:
        return unit in self.active_units

    def nginx_test(self) -> None:
        self.nginx_tests += 1
        if not self.nginx_ok:
            raise ReloadError("nginx: [emerg] invalid config", step="nginx -t")

    def nginx_reload(self) -> None:
        self.nginx_test()
        self.reloads += 1

    def issue_certificate(self, domain: str, webroot: str) -> None:
        self.issued.append(domain)
        if self.issuance_fails:
            raise IssuanceError(f"certbot failed for {domain}", step="issue certificate")
        self.install_certificate(domain)

    def install_certificate(self, domain: str) -> None:
        live = Path(self.settings.letsencrypt_live) / domain
        live.mkdir(parents=True, exist_ok=True)
        for f in ("fullchain.pem", "privkey.pem", "chain.pem"):
            (live / f).write_text("PEM\n")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        projects_dir=str(tmp_path / "etc/shr/projects.d"),
        apps_root=str(tmp_path / "srv/apps"),
        log_root=str(tmp_path / "var/log"),
        nginx_avail=str(tmp_path / "etc/nginx/sites-available"),
        nginx_enabled=str(tmp_path / "etc/nginx/sites-enabled"),
        templates_dir=str(tmp_path / "etc/shr/templates"),
        maintenance_root=str(tmp_path / "var/www/maintenance"),
        acme_webroot=str(tmp_path / "var/www/acme"),
        letsencrypt_live=str(tmp_path / "etc/letsencrypt/live"),
        systemd_dir=str(tmp_path / "etc/systemd/system"),
        logrotate_dir=str(tmp_path / "etc/logrotate.d"),
        state_dir=str(tmp_path / "var/lib/shr"),
        certbot_email="ops@example.com",
        lock_timeout_s=5.0,
        probe_delay_s=0.0,
    )


@pytest.fixture
def host(settings) -> FakeHost:
    return FakeHost(settings)


@pytest.fixture
def store(settings) -> DescriptorStore:
    return DescriptorStore(settings)


@pytest.fixture
def reconciler(settings, host, store) -> Reconciler:
    return Reconciler(settings, host=host, store=store, journal=Journal(settings.db_path))


@pytest.fixture
def write_descriptor(settings):
    """Write ``<name>.conf`` into the projects dir from keyword fields."""

    def _write(name: str, **fields: object) -> Path:
        root = Path(settings.projects_dir)
        root.mkdir(parents=True, exist_ok=True)
        lines = [f"NAME={name}"] + [f"{k.upper()}={v}" for k, v in fields.items()]
        path = root / f"{name}.conf"
        path.write_text("\n".join(lines) + "\n")
        return path

    return _write
