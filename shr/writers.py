from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .descriptors import ProjectDescriptor
from .paths import ProjectPaths
from .settings import Settings

CHALLENGE_PATH = "/.well-known/acme-challenge/"
HSTS = "max-age=31536000; includeSubDomains; preload"


@dataclass(frozen=True)
class TLSProfile:
    protocols: tuple[str, ...]
    ciphers: tuple[str, ...]
    prefer_server_ciphers: bool


TLS_PROFILES: dict[str, TLSProfile] = {
    "modern": TLSProfile(
        protocols=("TLSv1.3",),
        ciphers=("TLS_AES_256_GCM_SHA384", "TLS_CHACHA20_POLY1305_SHA256", "TLS_AES_128_GCM_SHA256"),
        prefer_server_ciphers=False,
    ),
    "intermediate": TLSProfile(
        protocols=("TLSv1.2", "TLSv1.3"),
        ciphers=(
            "ECDHE-ECDSA-AES256-GCM-SHA384",
            "ECDHE-RSA-AES256-GCM-SHA384",
            "ECDHE-ECDSA-CHACHA20-POLY1305",
            "ECDHE-RSA-CHACHA20-POLY1305",
            "ECDHE-ECDSA-AES128-GCM-SHA256",
            "ECDHE-RSA-AES128-GCM-SHA256",
        ),
        prefer_server_ciphers=True,
    ),
}

DEFAULT_MAINTENANCE_PAGE = """<!DOCTYPE html>
<html lang="en">
<head><meta charset="utf-8"><title>Maintenance</title></head>
<body><h1>Down for maintenance</h1><p>We will be back shortly.</p></body>
</html>
"""


@dataclass(frozen=True)
class Identity:
    username: str
    home_dir: str


def render_identity(d: ProjectDescriptor, settings: Settings) -> Identity:
    return Identity(username=d.user, home_dir=str(Path(settings.apps_root) / d.name))


def render_unit(d: ProjectDescriptor, settings: Settings) -> str:
    p = ProjectPaths.for_project(d.name, settings)
    output = ""
    if settings.app_log_mode == "file":
        output = f"StandardOutput=append:{p.log_dir}/app.log\nStandardError=append:{p.log_dir}/app.err.log\n"
    return f"""[Unit]
Description={d.name} service
After=network.target
StartLimitIntervalSec=60
StartLimitBurst=10

[Service]
Type=simple
User={d.user}
Group={d.user}
WorkingDirectory={p.current_dir}
EnvironmentFile=-{p.env_file}
ExecStart={d.exec}
Restart=always
RestartSec=3
{output}NoNewPrivileges=true
PrivateTmp=true
ProtectSystem=strict
ProtectHome=true
ReadWritePaths={p.app_dir} {p.log_dir}
AmbientCapabilities=
CapabilityBoundingSet=
LockPersonality=true
MemoryDenyWriteExecute=true

[Install]
WantedBy=multi-user.target
"""


def _logs(p: ProjectPaths) -> str:
    return f"  access_log {p.log_dir}/nginx.access.log;\n  error_log  {p.log_dir}/nginx.error.log warn;\n"


def _challenge(settings: Settings) -> str:
    return (
        f"  location ^~ {CHALLENGE_PATH} {{\n"
        f"    root {settings.acme_webroot};\n"
        "    default_type text/plain;\n"
        "  }\n"
    )


def _maintenance_body(p: ProjectPaths) -> str:
    # Every request gets the static page with a 503.
    return (
        f"  root {p.maintenance_dir};\n"
        "  error_page 503 /index.html;\n"
        "  location = /index.html { internal; }\n"
        "  location / { return 503; }\n"
    )


def _tls(d: ProjectDescriptor, settings: Settings) -> str:
    profile = TLS_PROFILES[settings.tls_profile]
    live = Path(settings.letsencrypt_live) / str(d.domain)
    return (
        f"  ssl_certificate {live}/fullchain.pem;\n"
        f"  ssl_certificate_key {live}/privkey.pem;\n"
        f"  ssl_trusted_certificate {live}/chain.pem;\n"
        f"  ssl_protocols {' '.join(profile.protocols)};\n"
        f"  ssl_ciphers {':'.join(profile.ciphers)};\n"
        f"  ssl_prefer_server_ciphers {'on' if profile.prefer_server_ciphers else 'off'};\n"
        "  ssl_stapling on;\n"
        "  ssl_stapling_verify on;\n"
        "  resolver 1.1.1.1 8.8.8.8 valid=300s;\n"
        f'  add_header Strict-Transport-Security "{HSTS}" always;\n'
    )


def _http_server(d: ProjectDescriptor, settings: Settings, body: str) -> str:
    p = ProjectPaths.for_project(d.name, settings)
    return (
        "server {\n"
        "  listen 80;\n"
        f"  server_name {d.domain};\n"
        f"{_logs(p)}\n"
        f"{_challenge(settings)}\n"
        f"{body}"
        "}\n"
    )


def _https_server(d: ProjectDescriptor, settings: Settings, body: str) -> str:
    p = ProjectPaths.for_project(d.name, settings)
    return (
        "server {\n"
        "  listen 443 ssl http2;\n"
        f"  server_name {d.domain};\n\n"
        f"{_tls(d, settings)}\n"
        f"{_logs(p)}\n"
        f"{body}"
        "}\n"
    )


def render_site_normal(d: ProjectDescriptor, settings: Settings) -> str:
    redirect = "  location / {\n    return 301 https://$host$request_uri;\n  }\n"
    proxy = (
        "  location / {\n"
        f"    proxy_pass http://127.0.0.1:{d.port};\n"
        "    proxy_http_version 1.1;\n"
        "    proxy_set_header Host $host;\n"
        "    proxy_set_header X-Real-IP $remote_addr;\n"
        "    proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;\n"
        "    proxy_set_header X-Forwarded-Proto $scheme;\n"
        '    proxy_set_header Connection "";\n'
        "  }\n"
    )
    return (
        f"# {d.name}: normal ({settings.tls_profile})\n"
        "# HTTP (80): ACME challenge + redirect to HTTPS\n"
        f"{_http_server(d, settings, redirect)}\n"
        "# HTTPS (443): reverse proxy\n"
        f"{_https_server(d, settings, proxy)}"
    )


def render_site_maintenance(d: ProjectDescriptor, settings: Settings) -> str:
    p = ProjectPaths.for_project(d.name, settings)
    return (
        f"# {d.name}: maintenance ({settings.tls_profile})\n"
        "# HTTP (80): ACME challenge + maintenance page\n"
        f"{_http_server(d, settings, _maintenance_body(p))}\n"
        "# HTTPS (443): maintenance page\n"
        f"{_https_server(d, settings, _maintenance_body(p))}"
    )


def render_site_provisioning(d: ProjectDescriptor, settings: Settings) -> str:
    """HTTP-only site used until the first certificate exists."""
    p = ProjectPaths.for_project(d.name, settings)
    body = "  location / { return 404; }\n" if d.enabled else _maintenance_body(p)
    return (
        f"# {d.name}: provisioning (HTTP only, waiting for certificate)\n"
        f"{_http_server(d, settings, body)}"
    )


def render_maintenance_page(settings: Settings) -> str:
    template = Path(settings.templates_dir) / "maintenance.html"
    if template.is_file():
        return template.read_text(encoding="utf-8")
    return DEFAULT_MAINTENANCE_PAGE


def render_logrotate(d: ProjectDescriptor, settings: Settings) -> dict[Path, str]:
    p = ProjectPaths.for_project(d.name, settings)
    out = {
        p.logrotate_nginx: f"""{p.log_dir}/nginx*.log {{
  daily
  rotate 14
  missingok
  notifempty
  compress
  delaycompress
  create 0640 root adm
  sharedscripts
  postrotate
    [ -x /usr/sbin/nginx ] && /usr/sbin/nginx -t && systemctl reload nginx > /dev/null 2>&1 || true
  endscript
}}
"""
    }
    if settings.app_log_mode == "file":
        out[p.logrotate_app] = f"""{p.log_dir}/app*.log {{
  daily
  rotate 14
  missingok
  notifempty
  compress
  delaycompress
  create 0640 {d.user} {d.user}
}}
"""
    return out


def render_health_units(d: ProjectDescriptor, settings: Settings) -> dict[Path, str]:
    """Oneshot probe service plus the timer that schedules it. Empty without a health check."""
    if d.health is None:
        return {}
    p = ProjectPaths.for_project(d.name, settings)
    service = f"""[Unit]
Description={d.name} HTTP health probe
After=network.target

[Service]
Type=oneshot
User=root
Group=root
ExecStart={settings.shr_bin} probe --name {d.name}
TimeoutStartSec={d.health.timeout * d.health.retries + 60}
Nice=10
CPUQuota=5%
IOSchedulingClass=idle
"""
    timer = f"""[Unit]
Description=Run {d.name} health probe every {d.health.interval}

[Timer]
OnBootSec=2min
OnUnitActiveSec={d.health.interval}
RandomizedDelaySec=30s
AccuracySec=30s

[Install]
WantedBy=timers.target
"""
    return {p.health_service_file: service, p.health_timer_file: timer}


def render_desired_state(d: ProjectDescriptor, settings: Settings) -> dict[str, object]:
    """Summary of what ``apply`` would converge the project to."""
    p = ProjectPaths.for_project(d.name, settings)
    ident = render_identity(d, settings)
    out: dict[str, object] = {
        "project": d.name,
        "enabled": d.enabled,
        "user": ident.username,
        "home": ident.home_dir,
        "domain": d.domain or "<none>",
        "port": d.port if d.port is not None else "<unset>",
        "exec": d.exec,
        "unit": str(p.unit_file),
        "site_normal": str(p.site_normal) if d.domain else None,
        "site_maint": str(p.site_maintenance) if d.domain else None,
        "active_site": ("normal" if d.enabled else "maintenance") if d.domain else None,
        "tls_profile": settings.tls_profile,
        "log_mode": settings.app_log_mode,
        "logrotate": [str(x) for x in render_logrotate(d, settings)] if d.enabled else [],
        "health": None,
    }
    if d.health:
        out["health"] = {
            "url": f"http://127.0.0.1:{d.port}{d.health.path}",
            "interval": d.health.interval,
            "timeout": d.health.timeout,
            "retries": d.health.retries,
            "timer": str(p.health_timer_file),
        }
    return out
