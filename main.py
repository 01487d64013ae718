from __future__ import annotations

import json
import secrets
from dataclasses import asdict

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from cdr import db
from cdr.api_models import ProposeRequest, ProposeResponse
from cdr.controller import Controller
from cdr.errors import ObserverUnavailable, ValidationError
from cdr.settings import settings
from cdr.trigger import handle_push, verify_signature

security = HTTPBasic()


def get_current_username(credentials: HTTPBasicCredentials = Depends(security)) -> str:
    if not (
        secrets.compare_digest(credentials.username, settings.admin_user)
        and secrets.compare_digest(credentials.password, settings.admin_password)
    ):
        raise HTTPException(status_code=401, detail="Invalid credentials", headers={"WWW-Authenticate": "Basic"})
    return credentials.username


def create_app(controller: Controller | None = None, start_background: bool = True) -> FastAPI:
    ctl = controller or Controller.build()
    app = FastAPI(title="Continuous Deployment Reconciler")
    app.state.controller = ctl

    @app.on_event("startup")
    def startup() -> None:
        db.init_db()
        if not settings.webhook_secret:
            db.log_event("WARN", "CDR_WEBHOOK_SECRET is not set: /hooks/push accepts unsigned push events")
        if start_background:
            ctl.start()

    @app.on_event("shutdown")
    def shutdown() -> None:
        if start_background:
            ctl.stop()

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    # --- desired state ---

    @app.post("/desired", response_model=ProposeResponse, status_code=201)
    def propose(req: ProposeRequest, username: str = Depends(get_current_username)):
        try:
            state = ctl.store.propose(req.image_reference, req.replica_count, req.exposed_port, source=f"api:{username}")
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return asdict(state)

    @app.get("/desired/current")
    def current():
        state = ctl.store.current()
        if state is None:
            raise HTTPException(status_code=404, detail="No desired state proposed yet")
        return asdict(state)

    @app.get("/desired/history")
    def history(limit: int = 20):
        return [asdict(s) for s in ctl.store.history(max(1, min(limit, 500)))]

    # --- convergence ---

    @app.get("/revisions")
    def revisions(limit: int = 20):
        return [asdict(r) for r in ctl.reconciler.records(max(1, min(limit, 500)))]

    @app.get("/revisions/{revision}")
    def revision_status(revision: int):
        rec = ctl.reconciler.status(revision)
        if rec is None:
            if ctl.store.get(revision) is None:
                raise HTTPException(status_code=404, detail=f"Unknown revision {revision}")
            return {"revision": revision, "outcome": "in_progress", "phase": "pending"}
        return asdict(rec)

    @app.get("/revisions/{revision}/actions")
    def revision_actions(revision: int):
        if ctl.store.get(revision) is None:
            raise HTTPException(status_code=404, detail=f"Unknown revision {revision}")
        return db.list_action_outcomes(ctl.store.app, revision)

    # --- observed state ---

    @app.get("/instances")
    def instances():
        snap = ctl.observer.latest()
        if snap is None:
            try:
                snap = ctl.observer.snapshot()
            except ObserverUnavailable as e:
                raise HTTPException(status_code=503, detail=str(e))
        return {
            "seq": snap.seq,
            "stale": ctl.observer.stale,
            "instances": [asdict(i) for i in sorted(snap, key=lambda i: i.instance_id)],
        }

    @app.get("/events")
    def events(limit: int = 100):
        return db.latest_events(max(1, min(limit, 1000)))

    # --- pipeline trigger ---

    @app.post("/hooks/push")
    async def push_hook(request: Request):
        body = await request.body()
        if not verify_signature(body, request.headers.get("X-Hub-Signature-256"), settings.webhook_secret):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Bad signature")
        kind = request.headers.get("X-GitHub-Event", "push")
        if kind == "ping":
            return {"ok": True}
        if kind != "push":
            return {"ignored": True, "reason": f"event {kind!r}"}
        try:
            event = json.loads(body or b"{}")
        except ValueError:
            raise HTTPException(status_code=400, detail="Body must be JSON")
        if not isinstance(event, dict):
            raise HTTPException(status_code=400, detail="Body must be a JSON object")
        try:
            state = handle_push(ctl.store, event)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if state is None:
            return {"ignored": True, "reason": f"ref {event.get('ref')!r} is not deployable"}
        return {"ignored": False, **asdict(state)}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
