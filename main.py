from __future__ import annotations

from typing import Any, Optional

from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from pdc import actions, db, manifests
from pdc.errors import ConflictError, NotFoundError, ValidationError
from pdc.gateway import NoHealthyBackends, select_backend
from pdc.reconciler import ControllerConfig, Reconciler
from pdc.runtime import RuntimeState
from pdc.settings import settings


def _dump(obj: Any) -> dict[str, Any]:
    return obj.model_dump(mode="json", by_alias=True)


def create_app(reconciler: Reconciler | None = None, start_controller: bool | None = None) -> FastAPI:
    runtime = reconciler.runtime if reconciler else RuntimeState()
    rec = reconciler or Reconciler(ControllerConfig(), runtime)
    run_controller = settings.controller_enabled if start_controller is None else start_controller

    app = FastAPI(title="Progressive Delivery Controller")
    app.state.reconciler = rec
    app.state.runtime = runtime

    @app.on_event("startup")
    def _startup() -> None:
        db.init_db()
        db.log_event("INFO", "Controller API starting")
        if run_controller:
            rec.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        rec.stop()
        rec.recorder.shutdown()

    @app.exception_handler(ValidationError)
    async def _validation(_request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": exc.message, "errors": exc.errors})

    @app.exception_handler(ConflictError)
    async def _conflict(_request: Request, exc: ConflictError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(NotFoundError)
    async def _not_found(_request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.get("/healthz")
    def healthz() -> dict:
        return {"status": "ok"}

    # --- manifests ----------------------------------------------------------------

    @app.post("/manifests")
    async def apply_manifests(request: Request) -> dict:
        text = (await request.body()).decode("utf-8")
        applied = manifests.apply_manifests(manifests.load_manifests(text))
        for res in applied:
            if res.kind == "Rollout":
                rec.enqueue(res.metadata.name)
        # A changed workload template can move every rollout that references it.
        if any(res.kind not in ("Rollout", "AnalysisTemplate") for res in applied):
            for rollout in actions.list_rollouts():
                if rollout.spec.workload_ref is not None:
                    rec.enqueue(rollout.name)
        return {"applied": [manifests.describe(res) for res in applied]}

    # --- rollouts -----------------------------------------------------------------

    @app.post("/rollouts")
    def apply_rollout(manifest: dict = Body(...)) -> dict:
        rollout = actions.apply_rollout(manifest)
        rec.enqueue(rollout.name)
        return _dump(rollout)

    @app.get("/rollouts")
    def list_rollouts() -> list[dict]:
        return [_dump(r) for r in actions.list_rollouts()]

    @app.get("/rollouts/{name}")
    def get_rollout(name: str) -> dict:
        return _dump(actions.get_rollout(name))

    @app.delete("/rollouts/{name}")
    def delete_rollout(name: str) -> dict:
        actions.delete_rollout(name)
        rec.enqueue(name)
        return {"ok": True}

    @app.post("/rollouts/{name}/promote")
    def promote(
        name: str,
        full: bool = False,
        resource_version: Optional[int] = Query(None, alias="resourceVersion"),
    ) -> dict:
        rollout = actions.promote(name, full=full, expected_version=resource_version)
        rec.enqueue(name)
        return _dump(rollout)

    @app.post("/rollouts/{name}/abort")
    def abort(name: str, resource_version: Optional[int] = Query(None, alias="resourceVersion")) -> dict:
        rollout = actions.abort(name, expected_version=resource_version)
        rec.enqueue(name)
        return _dump(rollout)

    @app.post("/rollouts/{name}/retry")
    def retry(name: str, resource_version: Optional[int] = Query(None, alias="resourceVersion")) -> dict:
        rollout = actions.retry(name, expected_version=resource_version)
        rec.enqueue(name)
        return _dump(rollout)

    @app.post("/rollouts/{name}/restart")
    def restart(name: str, resource_version: Optional[int] = Query(None, alias="resourceVersion")) -> dict:
        rollout = actions.restart(name, expected_version=resource_version)
        rec.enqueue(name)
        return _dump(rollout)

    @app.get("/rollouts/{name}/route")
    def route(name: str) -> dict:
        """Pick the backend for one request through the in-process gateway."""
        try:
            role, pod_hash = select_backend(name, runtime)
        except NoHealthyBackends as e:
            raise HTTPException(status_code=503, detail=str(e))
        return {"rollout": name, "role": role, "podTemplateHash": pod_hash}

    # --- analysis -----------------------------------------------------------------

    @app.post("/analysistemplates")
    def apply_analysis_template(manifest: dict = Body(...)) -> dict:
        return _dump(actions.apply_analysis_template(manifest))

    @app.get("/analysistemplates")
    def list_analysis_templates() -> list[dict]:
        return actions.list_analysis_templates()

    @app.get("/analysisruns")
    def list_analysis_runs(rollout: Optional[str] = None) -> list[dict]:
        return actions.list_analysis_runs(rollout)

    # --- events -------------------------------------------------------------------

    @app.get("/events")
    def events(limit: int = 100, rollout: Optional[str] = None) -> list[dict]:
        return db.latest_events(limit=max(1, min(1000, limit)), rollout=rollout)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=settings.host, port=settings.port)
