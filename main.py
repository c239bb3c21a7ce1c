from __future__ import annotations

import logging
import secrets

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from dorc import db
from dorc.api_models import AbortRequest, RevisionDocument, ServiceStatus
from dorc.db import StateStore
from dorc.docker_ops import DockerRuntime
from dorc.errors import DorcError, InvalidRevisionError
from dorc.reconciler import Reconciler
from dorc.rollouts import RolloutController
from dorc.settings import settings

logger = logging.getLogger("dorc.api")

app = FastAPI(title="Deployment Orchestration Core")
security = HTTPBasic()

store = StateStore()
controller = RolloutController(store, DockerRuntime())


# --- AUTH ---
def get_current_username(credentials: HTTPBasicCredentials = Depends(security)) -> str:
    user_ok = secrets.compare_digest(credentials.username, settings.api_user)
    pass_ok = secrets.compare_digest(credentials.password, settings.api_password)
    if not (user_ok and pass_ok):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


@app.exception_handler(DorcError)
async def dorc_error_handler(request: Request, exc: DorcError) -> JSONResponse:
    return JSONResponse(status_code=exc.http_status, content={"error": exc.code, "detail": str(exc)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # malformed documents are invalid revisions as far as callers are concerned
    return JSONResponse(
        status_code=422,
        content={"error": InvalidRevisionError.code, "detail": jsonable_encoder(exc.errors())},
    )


@app.on_event("startup")
async def startup() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    db.init_db()
    db.log_event("INFO", "Orchestrator started", kind="lifecycle")
    if settings.recover_on_startup:
        resumed = Reconciler(store, controller).recover()
        if resumed:
            logger.warning("recovering orphaned rollouts: %s", ", ".join(resumed))


@app.on_event("shutdown")
async def shutdown() -> None:
    await controller.shutdown()


# --- SERVICES ---
@app.get("/services", response_model=list[ServiceStatus])
def list_services(username: str = Depends(get_current_username)):
    return [ServiceStatus.from_service(s) for s in store.list()]


@app.get("/services/{service_id}", response_model=ServiceStatus)
def get_status(service_id: str, username: str = Depends(get_current_username)):
    return ServiceStatus.from_service(controller.get_status(service_id))


@app.post("/services/{service_id}/deploy", response_model=ServiceStatus, status_code=status.HTTP_202_ACCEPTED)
async def deploy(service_id: str, body: RevisionDocument, username: str = Depends(get_current_username)):
    revision = body.to_descriptor()
    service = await controller.deploy(service_id, revision)
    db.log_event(
        "INFO",
        f"{username} deployed revision {revision.revision_id}",
        service_id=service_id,
        revision_id=revision.revision_id,
        kind="audit",
    )
    return ServiceStatus.from_service(service)


@app.post("/services/{service_id}/abort", response_model=ServiceStatus)
async def abort(service_id: str, body: AbortRequest | None = None, username: str = Depends(get_current_username)):
    reason = (body or AbortRequest()).reason
    service = controller.abort(service_id, reason=f"{reason} ({username})")
    return ServiceStatus.from_service(service)


@app.get("/services/{service_id}/revisions/{revision_id}", response_model=RevisionDocument)
def get_revision(service_id: str, revision_id: str, username: str = Depends(get_current_username)):
    revision = store.get_revision(service_id, revision_id)
    if revision is None:
        raise HTTPException(status_code=404, detail=f"Unknown revision '{revision_id}' for '{service_id}'")
    return RevisionDocument.from_descriptor(revision)


# --- EVENTS ---
@app.get("/events")
def events(limit: int = 50, service_id: str | None = None, username: str = Depends(get_current_username)):
    return db.latest_events(limit=max(1, min(limit, 500)), service_id=service_id)
