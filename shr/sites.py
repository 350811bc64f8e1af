from __future__ import annotations

from enum import Enum
from pathlib import Path

from .errors import InvalidTransition, ReloadError
from .host import Host
from .paths import ProjectPaths


class SiteMode(str, Enum):
    UNINITIALIZED = "uninitialized"
    PROVISIONING_HTTP = "provisioning-http"
    NORMAL = "normal"
    MAINTENANCE = "maintenance"


_ALLOWED: dict[SiteMode, set[SiteMode]] = {
    SiteMode.UNINITIALIZED: {SiteMode.PROVISIONING_HTTP, SiteMode.NORMAL, SiteMode.MAINTENANCE},
    SiteMode.PROVISIONING_HTTP: {
        SiteMode.PROVISIONING_HTTP,
        SiteMode.NORMAL,
        SiteMode.MAINTENANCE,
        SiteMode.UNINITIALIZED,
    },
    # Falling back to provisioning only happens when the certificate is gone.
    SiteMode.NORMAL: {SiteMode.NORMAL, SiteMode.MAINTENANCE, SiteMode.PROVISIONING_HTTP, SiteMode.UNINITIALIZED},
    SiteMode.MAINTENANCE: {SiteMode.MAINTENANCE, SiteMode.NORMAL, SiteMode.PROVISIONING_HTTP, SiteMode.UNINITIALIZED},
}

_NEEDS_CERT = {SiteMode.NORMAL, SiteMode.MAINTENANCE}


class SiteStateMachine:
    """Tracks which site variant of one project is linked into nginx.

    The mode is never stored: it is whatever the single active link in
    ``sites-enabled`` points at. Activation swaps that one link atomically,
    so at most one variant is ever live for the project.
    """

    def __init__(self, paths: ProjectPaths, host: Host):
        self.paths = paths
        self.host = host

    def variant_path(self, mode: SiteMode) -> Path:
        if mode is SiteMode.NORMAL:
            return self.paths.site_normal
        if mode is SiteMode.MAINTENANCE:
            return self.paths.site_maintenance
        if mode is SiteMode.PROVISIONING_HTTP:
            return self.paths.site_provisioning
        raise InvalidTransition("uninitialized has no site file", project=self.paths.name)

    def current(self) -> SiteMode:
        target = self.host.read_link(self.paths.site_active)
        if target is None:
            return SiteMode.UNINITIALIZED
        if not target.is_absolute():
            target = self.paths.site_active.parent / target
        for mode in (SiteMode.NORMAL, SiteMode.MAINTENANCE, SiteMode.PROVISIONING_HTTP):
            if target == self.variant_path(mode):
                return mode
        return SiteMode.UNINITIALIZED

    def check(self, current: SiteMode, target: SiteMode, *, has_certificate: bool) -> None:
        if target not in _ALLOWED[current]:
            raise InvalidTransition(f"cannot go from {current.value} to {target.value}", project=self.paths.name)
        if target in _NEEDS_CERT and not has_certificate:
            raise InvalidTransition(
                f"{target.value} site needs a certificate; run apply to issue one first",
                project=self.paths.name,
            )

    def activate(self, target: SiteMode, *, has_certificate: bool) -> SiteMode:
        """Link ``target`` as the active variant and validate nginx config.

        On a failed config test the previous link is put back and
        ``ReloadError`` propagates, so nothing invalid stays active.
        Returns the previous mode.
        """
        previous = self.current()
        self.check(previous, target, has_certificate=has_certificate)
        if previous is target:
            return previous

        old_link = self.host.read_link(self.paths.site_active)
        self.host.swap_link(self.paths.site_active, self.variant_path(target))
        try:
            self.host.nginx_test()
        except ReloadError as e:
            if old_link is None:
                self.host.remove_file(self.paths.site_active)
            else:
                self.host.swap_link(self.paths.site_active, old_link)
            e.project = self.paths.name
            e.step = f"activate {target.value} site"
            raise
        return previous

    def deactivate(self) -> bool:
        return self.host.remove_file(self.paths.site_active)
