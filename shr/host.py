from __future__ import annotations

import os
import pwd
import shutil
import subprocess
from pathlib import Path

from .errors import HostOperationError, IssuanceError, ReloadError
from .settings import Settings


class Host:
    """Thin wrapper over the host: files, users, systemd, nginx and certbot.

    File operations are plain filesystem calls under the configured roots;
    everything else shells out with a bounded timeout.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    # -- commands ---------------------------------------------------------

    def run(self, cmd: list[str], *, timeout: int | None = None, step: str = "") -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout or self.settings.command_timeout_s,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise HostOperationError(f"timed out after {e.timeout}s: {' '.join(cmd)}", step=step or cmd[0]) from e
        except OSError as e:
            raise HostOperationError(f"cannot run {cmd[0]}: {e}", step=step or cmd[0]) from e

    def _check(self, cmd: list[str], step: str, timeout: int | None = None) -> str:
        res = self.run(cmd, timeout=timeout, step=step)
        if res.returncode != 0:
            detail = (res.stderr or res.stdout or "").strip()
            raise HostOperationError(f"{' '.join(cmd)} exited {res.returncode}: {detail}", step=step)
        return res.stdout

    # -- identity ---------------------------------------------------------

    def user_exists(self, username: str) -> bool:
        try:
            pwd.getpwnam(username)
            return True
        except KeyError:
            return False

    def create_user(self, username: str, home: str | None) -> None:
        cmd = ["useradd", "--system", "--shell", "/usr/sbin/nologin"]
        if home:
            cmd += ["--home-dir", home, "--create-home"]
        self._check(cmd + [username], step="create identity")

    def delete_user(self, username: str) -> None:
        if not self.user_exists(username):
            return
        self._check(["userdel", username], step="delete identity")

    def chown(self, path: Path, owner: str | None, group: str | None = None) -> None:
        if owner is None:
            return
        try:
            shutil.chown(path, user=owner, group=group or owner)
        except (LookupError, OSError) as e:
            raise HostOperationError(f"chown {owner} {path}: {e}", step="chown") from e

    # -- files ------------------------------------------------------------

    def ensure_dir(self, path: Path, mode: int = 0o755, owner: str | None = None) -> None:
        try:
            path.mkdir(parents=True, exist_ok=True)
            os.chmod(path, mode)
        except OSError as e:
            raise HostOperationError(f"mkdir {path}: {e}", step="ensure directory") from e
        self.chown(path, owner)

    def read_text(self, path: Path) -> str | None:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def write_file(self, path: Path, content: str, mode: int = 0o644, owner: str | None = None) -> bool:
        """Compare-and-overwrite. Returns True when the content changed."""
        if self.read_text(path) == content:
            return False
        tmp = path.with_name(f".{path.name}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(content, encoding="utf-8")
            os.chmod(tmp, mode)
            os.replace(tmp, path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise HostOperationError(f"write {path}: {e}", step="write file") from e
        self.chown(path, owner)
        return True

    def remove_file(self, path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise HostOperationError(f"remove {path}: {e}", step="remove file") from e

    def remove_tree(self, path: Path) -> None:
        if path.is_symlink() or path.is_file():
            self.remove_file(path)
            return
        shutil.rmtree(path, ignore_errors=True)
        if path.exists():
            raise HostOperationError(f"could not remove {path}", step="remove directory")

    def read_link(self, path: Path) -> Path | None:
        try:
            return Path(os.readlink(path))
        except (FileNotFoundError, OSError):
            return None

    def swap_link(self, link: Path, target: Path) -> None:
        """Point ``link`` at ``target`` atomically (rename over the old link)."""
        tmp = link.with_name(f".{link.name}.swap")
        try:
            link.parent.mkdir(parents=True, exist_ok=True)
            tmp.unlink(missing_ok=True)
            os.symlink(target, tmp)
            os.replace(tmp, link)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise HostOperationError(f"link {link} -> {target}: {e}", step="activate site") from e

    # -- systemd ----------------------------------------------------------

    def systemctl(self, *args: str) -> None:
        self._check(["systemctl", *args], step=f"systemctl {args[0]}")

    def daemon_reload(self) -> None:
        self.systemctl("daemon-reload")

    def unit_active(self, unit: str) -> bool:
        return self.run(["systemctl", "is-active", "--quiet", unit], step="systemctl is-active").returncode == 0

    # -- nginx ------------------------------------------------------------

    def nginx_test(self) -> None:
        try:
            res = self.run(["nginx", "-t"], step="nginx -t")
        except HostOperationError as e:
            raise ReloadError(e.message, step="nginx -t") from e
        if res.returncode != 0:
            raise ReloadError((res.stderr or res.stdout or "config test failed").strip(), step="nginx -t")

    def nginx_reload(self) -> None:
        """Validate then reload; never reload blind."""
        self.nginx_test()
        try:
            res = self.run(["systemctl", "reload", "nginx"], step="reload nginx")
        except HostOperationError as e:
            raise ReloadError(e.message, step="reload nginx") from e
        if res.returncode != 0:
            raise ReloadError((res.stderr or "reload failed").strip(), step="reload nginx")

    # -- certificates -----------------------------------------------------

    def certificate_exists(self, domain: str) -> bool:
        live = Path(self.settings.letsencrypt_live) / domain
        return (live / "fullchain.pem").is_file() and (live / "privkey.pem").is_file()

    def issue_certificate(self, domain: str, webroot: str) -> None:
        s = self.settings
        if not s.certbot_email:
            raise IssuanceError("CERTBOT_EMAIL is not set; skipping issuance", step="issue certificate")
        cmd = [
            "certbot",
            "certonly",
            "--webroot",
            "-w",
            webroot,
            "-d",
            domain,
            "--non-interactive",
            "--agree-tos",
            "-m",
            s.certbot_email,
            "--deploy-hook",
            "nginx -t && systemctl reload nginx",
        ]
        if s.certbot_staging:
            cmd.append("--test-cert")
        try:
            res = self.run(cmd, timeout=s.certbot_timeout_s, step="issue certificate")
        except HostOperationError as e:
            raise IssuanceError(e.message, step="issue certificate") from e
        if res.returncode != 0:
            detail = (res.stderr or res.stdout or "").strip().splitlines()
            raise IssuanceError(
                f"certbot failed for {domain}: {detail[-1] if detail else 'exit ' + str(res.returncode)}",
                step="issue certificate",
            )
        if not self.certificate_exists(domain):
            raise IssuanceError(f"certbot succeeded but no certificate found for {domain}", step="issue certificate")
