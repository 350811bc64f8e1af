import dataclasses
from pathlib import Path

from shr.descriptors import descriptor_from_mapping
from shr.writers import (
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


def _desc(settings, **extra):
    raw = {"NAME": "myapp", "ENABLED": "yes", "DOMAIN": "myapp.example.com", "PORT": "18080"}
    raw.update({k.upper(): str(v) for k, v in extra.items()})
    return descriptor_from_mapping(raw, settings)


def test_identity_is_derived_from_name(settings):
    ident = render_identity(_desc(settings), settings)
    assert ident.username == "svc-myapp"
    assert ident.home_dir == f"{settings.apps_root}/myapp"


def test_unit_runs_sandboxed_as_identity(settings):
    unit = render_unit(_desc(settings), settings)
    assert "User=svc-myapp\nGroup=svc-myapp\n" in unit
    assert f"WorkingDirectory={settings.apps_root}/myapp/current\n" in unit
    assert f"EnvironmentFile=-{settings.projects_dir}/myapp.env\n" in unit
    assert f"ExecStart={settings.apps_root}/myapp/current/myapp\n" in unit
    assert "Restart=always\nRestartSec=3\n" in unit
    assert "StartLimitBurst=10" in unit
    for flag in ("NoNewPrivileges=true", "PrivateTmp=true", "ProtectSystem=strict", "AmbientCapabilities=\n"):
        assert flag in unit
    assert f"ReadWritePaths={settings.apps_root}/myapp {settings.log_root}/myapp\n" in unit
    assert "StandardOutput" not in unit


def test_unit_file_log_mode(settings):
    s = dataclasses.replace(settings, app_log_mode="file")
    unit = render_unit(_desc(s), s)
    assert f"StandardOutput=append:{s.log_root}/myapp/app.log" in unit
    assert f"StandardError=append:{s.log_root}/myapp/app.err.log" in unit


def test_normal_site_redirects_and_proxies(settings):
    site = render_site_normal(_desc(settings), settings)
    http, https = site.split("# HTTPS (443)")

    assert "listen 80;" in http
    assert "location ^~ /.well-known/acme-challenge/" in http
    assert f"root {settings.acme_webroot};" in http
    assert "return 301 https://$host$request_uri;" in http

    assert "listen 443 ssl http2;" in https
    assert "server_name myapp.example.com;" in https
    assert f"ssl_certificate {settings.letsencrypt_live}/myapp.example.com/fullchain.pem;" in https
    assert "proxy_pass http://127.0.0.1:18080;" in https
    for header in ("Host $host", "X-Real-IP $remote_addr", "X-Forwarded-For", "X-Forwarded-Proto $scheme"):
        assert f"proxy_set_header {header}" in https
    assert "Strict-Transport-Security" in https


def test_tls_profiles_render_complete_artifacts(settings):
    intermediate = render_site_normal(_desc(settings), settings)
    assert "ssl_protocols TLSv1.2 TLSv1.3;" in intermediate
    assert "ECDHE-RSA-AES256-GCM-SHA384" in intermediate
    assert "ssl_prefer_server_ciphers on;" in intermediate

    modern_settings = dataclasses.replace(settings, tls_profile="modern")
    modern = render_site_normal(_desc(modern_settings), modern_settings)
    assert "ssl_protocols TLSv1.3;" in modern
    assert "ECDHE" not in modern
    assert "ssl_prefer_server_ciphers off;" in modern

    maint = render_site_maintenance(_desc(modern_settings), modern_settings)
    assert "ssl_protocols TLSv1.3;" in maint


def test_maintenance_site_serves_503_except_challenge(settings):
    site = render_site_maintenance(_desc(settings), settings)
    assert site.count("location ^~ /.well-known/acme-challenge/") == 1
    assert site.count("location / { return 503; }") == 2
    assert f"root {settings.maintenance_root}/myapp;" in site
    assert "proxy_pass" not in site
    assert "listen 443 ssl http2;" in site


def test_provisioning_site_is_http_only(settings):
    enabled = render_site_provisioning(_desc(settings), settings)
    assert "listen 443" not in enabled
    assert "ssl_certificate" not in enabled
    assert "/.well-known/acme-challenge/" in enabled
    assert "location / { return 404; }" in enabled

    disabled = render_site_provisioning(_desc(settings, enabled="no"), settings)
    assert "return 503;" in disabled


def test_logrotate_policies(settings):
    d = _desc(settings)
    policies = render_logrotate(d, settings)
    assert list(policies) == [Path(settings.logrotate_dir) / "nginx-myapp"]
    body = next(iter(policies.values()))
    for line in ("daily", "rotate 14", "compress", "delaycompress", "systemctl reload nginx"):
        assert line in body

    s = dataclasses.replace(settings, app_log_mode="file")
    policies = render_logrotate(_desc(s), s)
    app = policies[Path(s.logrotate_dir) / "app-myapp"]
    assert "create 0640 svc-myapp svc-myapp" in app


def test_health_units(settings):
    assert render_health_units(_desc(settings), settings) == {}

    d = _desc(settings, health_path="/health", health_interval="30s", health_timeout=2, health_retries=4)
    units = render_health_units(d, settings)
    service = units[Path(settings.systemd_dir) / "myapp-health.service"]
    timer = units[Path(settings.systemd_dir) / "myapp-health.timer"]
    assert f"ExecStart={settings.shr_bin} probe --name myapp" in service
    assert "Type=oneshot" in service
    assert "OnUnitActiveSec=30s" in timer
    assert "RandomizedDelaySec=30s" in timer


def test_maintenance_page_template(settings):
    assert "maintenance" in render_maintenance_page(settings).lower()
    tpl = Path(settings.templates_dir)
    tpl.mkdir(parents=True)
    (tpl / "maintenance.html").write_text("<p>brb</p>")
    assert render_maintenance_page(settings) == "<p>brb</p>"


def test_writers_are_deterministic(settings):
    d = _desc(settings, health_path="/health")
    for fn in (render_unit, render_site_normal, render_site_maintenance, render_site_provisioning):
        assert fn(d, settings) == fn(d, settings)
    assert render_logrotate(d, settings) == render_logrotate(d, settings)


def test_desired_state_summary(settings):
    out = render_desired_state(_desc(settings, enabled="no"), settings)
    assert out["project"] == "myapp"
    assert out["active_site"] == "maintenance"
    assert out["unit"] == f"{settings.systemd_dir}/myapp.service"
    assert out["logrotate"] == []
    assert out["health"] is None
