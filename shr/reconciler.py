from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from .db import Journal
from .descriptors import NAME_RE, USER_RE, DescriptorStore, ProjectDescriptor, default_fields, descriptor_from_mapping
from .errors import (
    HostOperationError,
    InvalidTransition,
    IssuanceError,
    MissingPort,
    NotFound,
    ReloadError,
    ShrError,
    ValidationError,
)
from .host import Host
from .locking import project_lock
from .paths import ProjectPaths
from .settings import Settings
from .sites import SiteMode, SiteStateMachine
from .writers import (
    render_desired_state,
    render_health_units,
    render_identity,
    render_logrotate,
    render_maintenance_page,
    render_site_maintenance,
    render_site_normal,
    render_site_provisioning,
    render_unit,
)


@dataclass
class ApplyResult:
    project: str
    mode: SiteMode
    changed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    degraded: bool = False
    reload_needed: bool = False


@dataclass
class BatchResult:
    results: list[ApplyResult] = field(default_factory=list)
    failures: dict[str, ShrError] = field(default_factory=dict)
    reload_error: ReloadError | None = None

    @property
    def ok(self) -> bool:
        return not self.failures and self.reload_error is None


class Reconciler:
    """Drives the host towards the declared project descriptors.

    Projects are handled one at a time, each under its own lock. nginx is
    reloaded once per batch, except for the reload that must happen before
    a first certificate can be requested.
    """

    def __init__(
        self,
        settings: Settings,
        host: Host | None = None,
        store: DescriptorStore | None = None,
        journal: Journal | None = None,
    ):
        self.settings = settings
        self.host = host or Host(settings)
        self.store = store or DescriptorStore(settings)
        self.journal = journal or Journal(settings.db_path)

    def paths(self, name: str) -> ProjectPaths:
        if not NAME_RE.match(name):
            raise ValidationError(f"invalid project name {name!r}", project=name)
        return ProjectPaths.for_project(name, self.settings)

    def sites(self, name: str) -> SiteStateMachine:
        return SiteStateMachine(self.paths(name), self.host)

    def lock(self, name: str):
        return project_lock(self.paths(name).lock_file, timeout=self.settings.lock_timeout_s, project=name)

    # -- apply ------------------------------------------------------------

    def apply(self, d: ProjectDescriptor) -> ApplyResult:
        batch = self._run_batch([d])
        if d.name in batch.failures:
            raise batch.failures[d.name]
        if batch.reload_error:
            raise batch.reload_error
        return batch.results[0]

    def apply_all(self, names: list[str] | None = None) -> BatchResult:
        """Apply every project (or just ``names``); failures never stop the batch."""
        batch = BatchResult()
        descriptors: list[ProjectDescriptor] = []
        if names is None:
            valid, failures = self.store.scan()
            descriptors.extend(valid)
            for name, err in failures.items():
                self._fail(batch, name, err, "load descriptor")
        else:
            for name in names:
                try:
                    descriptors.append(self.store.load(name))
                except ValidationError as e:
                    self._fail(batch, name, e, "load descriptor")
        return self._run_batch(descriptors, batch)

    def _fail(self, batch: BatchResult, name: str, err: ShrError, step: str) -> None:
        err.project = err.project or name
        err.step = err.step or step
        batch.failures[name] = err
        self.journal.log_event("ERROR", err.message, project=name, step=err.step)

    def _run_batch(self, descriptors: list[ProjectDescriptor], batch: BatchResult | None = None) -> BatchResult:
        batch = batch or BatchResult()
        for d in descriptors:
            try:
                with self.lock(d.name):
                    result = self._apply_one(d)
            except ShrError as e:
                self._fail(batch, d.name, e, "apply")
                continue
            batch.results.append(result)

        if any(r.reload_needed for r in batch.results):
            try:
                self.host.nginx_reload()
            except ReloadError as e:
                batch.reload_error = e
                self.journal.log_event("ERROR", e.message, step=e.step)
        return batch

    def _apply_one(self, d: ProjectDescriptor) -> ApplyResult:
        p = self.paths(d.name)
        sm = SiteStateMachine(p, self.host)
        result = ApplyResult(project=d.name, mode=sm.current())
        degraded_reason: str | None = None

        # 1. port
        if d.port is None:
            raise MissingPort("PORT is required", project=d.name, step="validate")

        # 2. identity and directory tree
        ident = render_identity(d, self.settings)
        self._step(d, "identity", lambda: self._ensure_identity(d, ident.home_dir, p, result))

        # 3. process unit
        unit_changed = self._step(d, "unit", lambda: self.host.write_file(p.unit_file, render_unit(d, self.settings)))
        if unit_changed:
            result.changed.append(str(p.unit_file))
            self._step(d, "unit", self.host.daemon_reload)

        # 4. shared challenge root
        self._step(d, "acme webroot", lambda: self.host.ensure_dir(Path(self.settings.acme_webroot), 0o755))

        has_cert = False
        if d.domain:
            has_cert = self.host.certificate_exists(d.domain)
            if not has_cert:
                # 5. HTTP-only bootstrap, then ask for the first certificate.
                self._write_site(d, p.site_provisioning, render_site_provisioning(d, self.settings), sm, result)
                sm.activate(SiteMode.PROVISIONING_HTTP, has_certificate=False)
                self.host.nginx_reload()
                try:
                    self.host.issue_certificate(d.domain, self.settings.acme_webroot)
                    has_cert = True
                    self.journal.log_event("INFO", f"Certificate issued for {d.domain}", project=d.name)
                except IssuanceError as e:
                    e.project = d.name
                    degraded_reason = f"IssuanceError: {e.message}"
                    result.warnings.append(degraded_reason)
                    self.journal.log_event("WARN", e.message, project=d.name, step=e.step)

            # 6. both HTTPS variants, ready for instant switches
            self._write_site(d, p.site_normal, render_site_normal(d, self.settings), sm, result)
            self._write_site(d, p.site_maintenance, render_site_maintenance(d, self.settings), sm, result)

        # 7. serve or park; the site link moves only after the host steps succeed
        if d.enabled:
            self._start_service(d, p, unit_changed)
            self._install_logrotate(d, result)
            self._install_health(d, p, result)
            target = SiteMode.NORMAL
        else:
            self._step(d, "stop service", lambda: self.host.systemctl("disable", "--now", p.unit_name))
            self._remove_health(p, result)
            target = SiteMode.MAINTENANCE

        if not d.domain:
            self._remove_sites(d, sm, result)
        elif has_cert:
            if sm.activate(target, has_certificate=True) is not target:
                result.reload_needed = True
            try:
                if self.host.remove_file(p.site_provisioning):
                    result.changed.append(str(p.site_provisioning))
            except HostOperationError as e:
                result.warnings.append(f"HostOperationError: {e.message}")
                self.journal.log_event("WARN", e.message, project=d.name, step="remove provisioning site")

        result.mode = sm.current()
        result.degraded = result.mode is SiteMode.PROVISIONING_HTTP
        if result.degraded and degraded_reason is None:
            degraded_reason = "serving HTTP only until a certificate is issued"
        self.journal.record_apply(d.name, result.degraded, degraded_reason)
        self.journal.log_event(
            "INFO", f"Applied ({result.mode.value}, {len(result.changed)} changed)", project=d.name, step="apply"
        )
        return result

    def _step(self, d: ProjectDescriptor, step: str, fn):
        try:
            return fn()
        except HostOperationError as e:
            e.project = d.name
            e.step = e.step or step
            raise

    def _ensure_identity(self, d: ProjectDescriptor, home: str, p: ProjectPaths, result: ApplyResult) -> None:
        if not self.host.user_exists(d.user):
            self.host.create_user(d.user, home)
            result.changed.append(f"user:{d.user}")
        self.host.ensure_dir(p.app_dir, 0o750, d.user)
        self.host.ensure_dir(p.current_dir, 0o750, d.user)
        self.host.ensure_dir(p.releases_dir, 0o750, d.user)
        self.host.ensure_dir(p.log_dir, 0o755)
        self.host.ensure_dir(p.maintenance_dir, 0o755)
        page = p.maintenance_dir / "index.html"
        if self.host.write_file(page, render_maintenance_page(self.settings)):
            result.changed.append(str(page))

    def _write_site(self, d: ProjectDescriptor, path: Path, content: str, sm: SiteStateMachine, result: ApplyResult) -> None:
        """Write a site variant; if it is the live one, validate and roll back on failure."""
        previous = self.host.read_text(path)
        if not self._step(d, "write site", lambda: self.host.write_file(path, content)):
            return
        result.changed.append(str(path))
        current = sm.current()
        if current is SiteMode.UNINITIALIZED or sm.variant_path(current) != path:
            return
        try:
            self.host.nginx_test()
        except ReloadError as e:
            if previous is None:
                self.host.remove_file(path)
            else:
                self.host.write_file(path, previous)
            e.project = d.name
            e.step = f"write {path.name}"
            raise
        result.reload_needed = True

    def _remove_sites(self, d: ProjectDescriptor, sm: SiteStateMachine, result: ApplyResult) -> None:
        """Without a DOMAIN there is no site: unlink it and drop every variant."""
        p = sm.paths
        removed = []
        if self._step(d, "remove site", sm.deactivate):
            removed.append(str(p.site_active))
        for f in (p.site_normal, p.site_maintenance, p.site_provisioning):
            if self._step(d, "remove site", lambda f=f: self.host.remove_file(f)):
                removed.append(str(f))
        if removed:
            result.changed += removed
            result.reload_needed = True

    def _start_service(self, d: ProjectDescriptor, p: ProjectPaths, unit_changed: bool) -> None:
        was_active = self.host.unit_active(p.unit_name)
        self._step(d, "start service", lambda: self.host.systemctl("enable", "--now", p.unit_name))
        if unit_changed and was_active:
            self._step(d, "restart service", lambda: self.host.systemctl("restart", p.unit_name))

    def _install_logrotate(self, d: ProjectDescriptor, result: ApplyResult) -> None:
        policies = render_logrotate(d, self.settings)
        for path, body in policies.items():
            if self._step(d, "logrotate", lambda: self.host.write_file(path, body)):
                result.changed.append(str(path))
        app_policy = self.paths(d.name).logrotate_app
        if app_policy not in policies and self.host.remove_file(app_policy):
            result.changed.append(str(app_policy))

    def _install_health(self, d: ProjectDescriptor, p: ProjectPaths, result: ApplyResult) -> None:
        units = render_health_units(d, self.settings)
        if not units:
            self._remove_health(p, result)
            return
        changed = False
        for path, body in units.items():
            if self._step(d, "health probe", lambda: self.host.write_file(path, body)):
                result.changed.append(str(path))
                changed = True
        if changed:
            self._step(d, "health probe", self.host.daemon_reload)
        self._step(d, "health probe", lambda: self.host.systemctl("enable", "--now", p.health_timer_name))

    def _remove_health(self, p: ProjectPaths, result: ApplyResult) -> None:
        if not p.health_timer_file.exists() and not p.health_service_file.exists():
            return
        self._best_effort(p.name, "disable health probe", lambda: self.host.systemctl("disable", "--now", p.health_timer_name))
        for path in (p.health_timer_file, p.health_service_file):
            if self.host.remove_file(path):
                result.changed.append(str(path))
        self.host.daemon_reload()

    def _best_effort(self, name: str, step: str, fn) -> None:
        try:
            fn()
        except HostOperationError as e:
            self.journal.log_event("WARN", e.message, project=name, step=step)

    # -- dry run ----------------------------------------------------------

    def render(self, d: ProjectDescriptor) -> dict[str, object]:
        out = render_desired_state(d, self.settings)
        out["current_mode"] = self.sites(d.name).current().value
        if d.domain:
            out["certificate"] = "present" if self.host.certificate_exists(d.domain) else "absent"
        return out

    # -- operator actions -------------------------------------------------

    def add_project(
        self,
        name: str,
        domain: str,
        port: int,
        user: str | None = None,
        exec_path: str | None = None,
        enable: bool = False,
    ) -> ApplyResult:
        raw = {"NAME": name, "ENABLED": "yes" if enable else "no", "DOMAIN": domain, "PORT": str(port)}
        if user:
            raw["USER"] = user
        if exec_path:
            raw["EXEC"] = exec_path
        d = descriptor_from_mapping(raw, self.settings)
        path = self.store.save(d)
        self.journal.log_event("INFO", f"Project config created: {path}", project=name, step="add-project")
        return self.apply(d)

    def remove(self, name: str, purge: bool = False) -> list[str]:
        """Tear down everything derived from ``name``. Already-absent pieces are skipped."""
        p = self.paths(name)
        try:
            user = self.store.load(name).user
        except ValidationError:
            user = default_fields(name, self.settings)["user"]

        removed: list[str] = []
        with self.lock(name):
            if p.unit_file.exists():
                self._best_effort(name, "stop service", lambda: self.host.systemctl("disable", "--now", p.unit_name))
            if p.health_timer_file.exists():
                self._best_effort(
                    name, "disable health probe", lambda: self.host.systemctl("disable", "--now", p.health_timer_name)
                )

            if self._step_named(name, "remove site", self.sites(name).deactivate):
                removed.append(str(p.site_active))
            site_files = [p.site_normal, p.site_maintenance, p.site_provisioning]
            removed += [str(f) for f in site_files if self.host.remove_file(f)]
            if removed:
                self._step_named(name, "reload nginx", self.host.nginx_reload)

            self.store.delete(name)
            units = [p.unit_file, p.health_service_file, p.health_timer_file]
            unit_removed = [str(f) for f in units if self.host.remove_file(f)]
            removed += unit_removed
            removed += [str(f) for f in (p.logrotate_nginx, p.logrotate_app) if self.host.remove_file(f)]
            if unit_removed:
                self._best_effort(name, "daemon-reload", self.host.daemon_reload)

            if purge:
                for d in (p.app_dir, p.log_dir, p.maintenance_dir):
                    if d.exists():
                        self._step_named(name, "purge data", lambda d=d: self.host.remove_tree(d))
                        removed.append(str(d))
                if self.host.user_exists(user):
                    self._step_named(name, "purge identity", lambda: self.host.delete_user(user))
                    removed.append(f"user:{user}")
                self.journal.forget(name)

        self.journal.log_event("INFO", f"Project removed{' (purged)' if purge else ''}", project=name, step="remove")
        return removed

    def _step_named(self, name: str, step: str, fn):
        try:
            return fn()
        except ShrError as e:
            e.project = name
            e.step = e.step or step
            raise

    def pause(self, name: str) -> SiteMode:
        return self._switch(name, SiteMode.MAINTENANCE, "pause")

    def resume(self, name: str) -> SiteMode:
        return self._switch(name, SiteMode.NORMAL, "resume")

    def _switch(self, name: str, target: SiteMode, action: str) -> SiteMode:
        d = self.store.load(name)
        if not d.domain:
            raise InvalidTransition("project has no DOMAIN and no site to switch", project=name, step=action)
        sm = self.sites(name)
        with self.lock(name):
            current = sm.current()
            if current is SiteMode.UNINITIALIZED or not sm.variant_path(target).exists():
                raise InvalidTransition("project has not been applied yet", project=name, step=action)
            previous = sm.activate(target, has_certificate=self.host.certificate_exists(d.domain))
            if previous is not target:
                self._step_named(name, action, self.host.nginx_reload)
        verb = "enabled" if target is SiteMode.MAINTENANCE else "disabled"
        self.journal.log_event("INFO", f"Maintenance {verb}", project=name, step=action)
        return previous

    def restart_service(self, name: str) -> None:
        """Restart the project's unit; serialized with apply on the project lock."""
        with self.lock(name):
            self._step_named(name, "restart service", lambda: self.host.systemctl("restart", self.paths(name).unit_name))

    def create_env(self, name: str, owner: str | None = None) -> Path:
        self.paths(name)
        if not self.store.path(name).exists():
            raise NotFound(f"no descriptor for {name}", project=name, step="create-env")
        path = self.store.env_path(name)
        if not path.exists():
            self.host.write_file(path, f"# Environment for {name}\n", mode=0o640)
        os.chmod(path, 0o640)
        self.host.chown(path, owner or "root", "root")
        return path

    def add_user(self, username: str, home: str | None = None) -> bool:
        if not USER_RE.match(username):
            raise ValidationError(f"invalid user name {username!r}", step="add-user")
        if self.host.user_exists(username):
            return False
        self.host.create_user(username, home)
        self.journal.log_event("INFO", f"Created system user {username}", step="add-user")
        return True
