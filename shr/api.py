from __future__ import annotations

from fastapi import FastAPI, HTTPException, Query

from .api_models import EventOut, ProjectStatusOut, ProjectSummary
from .descriptors import ProjectDescriptor
from .errors import NotFound, ValidationError
from .reconciler import Reconciler
from .sites import SiteMode


def project_status(reconciler: Reconciler, d: ProjectDescriptor) -> ProjectStatusOut:
    mode = reconciler.sites(d.name).current()
    st = reconciler.journal.get_status(d.name)
    has_cert = bool(d.domain) and reconciler.host.certificate_exists(str(d.domain))
    return ProjectStatusOut(
        name=d.name,
        enabled=d.enabled,
        domain=d.domain,
        port=d.port,
        user=d.user,
        exec=d.exec,
        site_mode=mode.value,
        certificate=has_cert,
        degraded=mode is SiteMode.PROVISIONING_HTTP or bool(st and st.degraded),
        reason=st.reason if st else None,
        health_path=d.health.path if d.health else None,
        last_apply_at=st.last_apply_at if st else None,
        last_probe_at=st.last_probe_at if st else None,
        last_probe_ok=st.last_probe_ok if st else None,
        restart_count=st.restart_count if st else 0,
    )


def create_app(reconciler: Reconciler) -> FastAPI:
    """Read-only status API over the live host state."""
    app = FastAPI(title="Single-Host Reconciler")

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/projects", response_model=list[ProjectSummary])
    def list_projects() -> list[ProjectSummary]:
        out = []
        for d in reconciler.store.list():
            st = project_status(reconciler, d)
            out.append(ProjectSummary(**st.model_dump(include=set(ProjectSummary.model_fields))))
        return out

    @app.get("/projects/{name}", response_model=ProjectStatusOut)
    def get_project(name: str) -> ProjectStatusOut:
        try:
            d = reconciler.store.load(name)
        except NotFound:
            raise HTTPException(status_code=404, detail=f"Unknown project '{name}'")
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return project_status(reconciler, d)

    @app.get("/events", response_model=list[EventOut])
    def events(limit: int = Query(50, ge=1, le=1000), project: str | None = None) -> list[EventOut]:
        return [EventOut(**e) for e in reconciler.journal.latest_events(limit, project)]

    return app
