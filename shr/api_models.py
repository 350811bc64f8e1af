from __future__ import annotations

from pydantic import BaseModel, Field


class ProjectSummary(BaseModel):
    name: str
    enabled: bool
    domain: str | None = None
    port: int | None = None
    site_mode: str = Field(..., description="uninitialized|provisioning-http|normal|maintenance")
    degraded: bool = False


class ProjectStatusOut(ProjectSummary):
    user: str
    exec: str
    certificate: bool = Field(False, description="A certificate exists for the domain")
    reason: str | None = Field(None, description="Why the project is degraded, if it is")
    health_path: str | None = None
    last_apply_at: str | None = None
    last_probe_at: str | None = None
    last_probe_ok: bool | None = None
    restart_count: int = 0


class EventOut(BaseModel):
    id: int
    ts: str
    level: str
    project: str | None = None
    step: str | None = None
    message: str
