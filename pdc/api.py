from __future__ import annotations

import secrets
from typing import Any

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from . import db
from .api_models import DeployRequest, InitRequest, PromoteRequest, ShiftRequest
from .controller import Controller
from .errors import ControllerError
from .gateway import NoHealthyBackends, select_backend
from .orchestration import InMemoryOrchestrator
from .runtime import RuntimeState
from .settings import settings

security = HTTPBasic(auto_error=False)


def build_controller() -> Controller:
    """Controller wired to the orchestration backend named by PDC_BACKEND."""
    runtime = RuntimeState()
    if settings.backend == "docker":
        from .docker_ops import DockerOrchestrator

        client = DockerOrchestrator(runtime)
    elif settings.backend == "memory":
        client = InMemoryOrchestrator()
    else:
        raise ValueError(f"unknown backend '{settings.backend}' (expected memory|docker)")
    return Controller(client, settings=settings, runtime=runtime)


def require_admin(credentials: HTTPBasicCredentials | None = Depends(security)) -> str:
    if not settings.admin_password:
        return "anonymous"
    if credentials is None or not (
        secrets.compare_digest(credentials.username, settings.admin_user)
        and secrets.compare_digest(credentials.password, settings.admin_password)
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


def create_app(controller: Controller | None = None) -> FastAPI:
    app = FastAPI(title="Progressive Delivery Controller")
    state: dict[str, Controller] = {}

    def ctl() -> Controller:
        return state["controller"]

    @app.on_event("startup")
    def startup() -> None:
        db.init_db()
        state["controller"] = controller or build_controller()
        results = ctl().reconcile_all()
        db.log_event("INFO", f"Controller started; reconciled {len(results)} deployment(s)")

    @app.exception_handler(ControllerError)
    def controller_error(_request: Request, exc: ControllerError) -> JSONResponse:
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(ValueError)
    def value_error(_request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"error": "InvalidRequest", "detail": str(exc)})

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/check")
    def check() -> dict[str, Any]:
        return {
            "backend": settings.backend,
            "orchestrator_available": ctl().client.ping(),
            "deployments": len(db.list_deployments()),
        }

    @app.get("/deployments")
    def list_deployments() -> list[dict[str, Any]]:
        return ctl().list_deployments()

    @app.get("/deployments/{name}")
    def get_deployment(name: str) -> dict[str, Any]:
        return ctl().status(name)

    @app.post("/deployments/{name}/init")
    def init(name: str, req: InitRequest, user: str = Depends(require_admin)) -> dict[str, Any]:
        return ctl().init(name, req.image, req.strategy, req.total_capacity, health_timeout_s=req.health_timeout_s)

    @app.post("/deployments/{name}/deploy")
    def deploy(name: str, req: DeployRequest, user: str = Depends(require_admin)) -> dict[str, Any]:
        return ctl().deploy(name, req.image, req.weight, health_timeout_s=req.health_timeout_s)

    @app.post("/deployments/{name}/shift")
    def shift(name: str, req: ShiftRequest, user: str = Depends(require_admin)) -> dict[str, Any]:
        return ctl().shift(name, req.weight, health_timeout_s=req.health_timeout_s)

    @app.post("/deployments/{name}/promote")
    def promote(name: str, req: PromoteRequest | None = None, user: str = Depends(require_admin)) -> dict[str, Any]:
        return ctl().promote(name, health_timeout_s=req.health_timeout_s if req else None)

    @app.post("/deployments/{name}/rollback")
    def rollback(name: str, user: str = Depends(require_admin)) -> dict[str, Any]:
        return ctl().rollback(name)

    @app.post("/deployments/{name}/cleanup")
    def cleanup(name: str, user: str = Depends(require_admin)) -> dict[str, Any]:
        return ctl().cleanup(name)

    @app.delete("/deployments/{name}")
    def destroy(name: str, user: str = Depends(require_admin)) -> dict[str, str]:
        ctl().destroy(name)
        return {"status": "destroyed", "name": name}

    @app.get("/events")
    def events(limit: int = 50, deployment: str | None = None) -> list[dict[str, Any]]:
        return db.latest_events(limit=max(1, min(1000, limit)), service_name=deployment)

    @app.api_route("/svc/{service}/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
    async def proxy(service: str, path: str, request: Request) -> Response:
        try:
            target, pool = select_backend(service, ctl().runtime)
        except NoHealthyBackends as e:
            raise HTTPException(status_code=503, detail=str(e)) from e
        headers = {k: v for k, v in request.headers.items() if k.lower() not in {"host", "content-length"}}
        try:
            async with httpx.AsyncClient(timeout=settings.gateway_timeout_s) as client:
                upstream = await client.request(
                    request.method,
                    f"{target.base_url}/{path}",
                    params=request.query_params,
                    content=await request.body(),
                    headers=headers,
                )
        except httpx.HTTPError as e:
            raise HTTPException(status_code=502, detail=f"upstream error: {type(e).__name__}") from e
        return Response(
            content=upstream.content,
            status_code=upstream.status_code,
            headers={"x-pdc-pool": pool},
            media_type=upstream.headers.get("content-type"),
        )

    return app
