from __future__ import annotations

import secrets
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import Response
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from starlette.concurrency import run_in_threadpool

from fcc import db
from fcc.api_models import CapacitySpecModel, SetCapacityRequest, SetCapacityResponse, StateVersionModel
from fcc.compute import DockerCompute, validate_health_path
from fcc.errors import LockUnavailable, NoHealthyTargets, StaleWrite
from fcc.gateway import RouteRequest, TrafficRouter
from fcc.health import HealthChecker
from fcc.locks import DistributedLock
from fcc.reconciler import CapacityController
from fcc.registry import TargetRegistry
from fcc.runtime import CapacitySpec, RuntimeState
from fcc.settings import settings
from fcc.state_store import VersionedStateStore

security = HTTPBasic()


@dataclass
class FleetServices:
    controller: CapacityController
    checker: HealthChecker
    router: TrafficRouter
    store: VersionedStateStore
    locks: DistributedLock


def build_services() -> FleetServices:
    validate_health_path(settings.health_path)
    runtime = RuntimeState()
    registry = TargetRegistry()
    locks = DistributedLock()
    store = VersionedStateStore(f"capacity/{settings.fleet_id}")
    checker = HealthChecker(registry, fleet=settings.fleet_id)
    controller = CapacityController(
        fleet=settings.fleet_id,
        compute=DockerCompute(),
        registry=registry,
        checker=checker,
        locks=locks,
        store=store,
        runtime=runtime,
        initial_spec=CapacitySpec(
            min_size=settings.min_size,
            max_size=settings.max_size,
            desired=settings.desired,
            image=settings.image,
        ),
    )
    router = TrafficRouter(registry, runtime)
    return FleetServices(controller=controller, checker=checker, router=router, store=store, locks=locks)


def create_app(
    services: FleetServices | None = None,
    admin_user: str | None = None,
    admin_password: str | None = None,
    start_loops: bool = True,
) -> FastAPI:
    admin_user = admin_user if admin_user is not None else settings.admin_user
    admin_password = admin_password if admin_password is not None else settings.admin_password

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db.init_db()
        if app.state.services is None:
            app.state.services = build_services()
        svc: FleetServices = app.state.services
        if start_loops:
            svc.controller.recover()
            svc.checker.start()
            svc.controller.start()
        yield
        if start_loops:
            svc.controller.stop()
            svc.checker.stop()

    app = FastAPI(title="Fleet Capacity Controller", lifespan=lifespan)
    app.state.services = services

    def get_services(request: Request) -> FleetServices:
        return request.app.state.services

    def require_operator(credentials: HTTPBasicCredentials = Depends(security)) -> str:
        # Fail closed: with no configured credentials nobody is an operator.
        if not admin_user or not admin_password:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Operator credentials are not configured.",
                headers={"WWW-Authenticate": "Basic"},
            )
        user_ok = secrets.compare_digest(credentials.username.encode(), admin_user.encode())
        pass_ok = secrets.compare_digest(credentials.password.encode(), admin_password.encode())
        if not (user_ok and pass_ok):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid credentials.",
                headers={"WWW-Authenticate": "Basic"},
            )
        return credentials.username

    @app.get("/_fleet/status")
    def fleet_status(operator: str = Depends(require_operator), svc: FleetServices = Depends(get_services)):
        out = svc.controller.status()
        out["routing"] = svc.router.routing_table()
        return out

    @app.get("/_fleet/events")
    def fleet_events(limit: int = 100, level: str | None = None, operator: str = Depends(require_operator)):
        return db.latest_events(limit=max(1, min(1000, limit)), level=level)

    @app.get("/_fleet/versions", response_model=list[StateVersionModel])
    def fleet_versions(operator: str = Depends(require_operator), svc: FleetServices = Depends(get_services)):
        out: list[StateVersionModel] = []
        for v in svc.store.list_versions():
            sv = svc.store.get_version(v)
            spec = CapacitySpec.from_json(sv.payload)
            out.append(
                StateVersionModel(
                    version=sv.version,
                    created_at=sv.created_at,
                    fence=sv.fence,
                    spec=CapacitySpecModel(**asdict(spec)),
                )
            )
        return out

    @app.put("/_fleet/capacity", response_model=SetCapacityResponse)
    def set_capacity(
        req: SetCapacityRequest,
        operator: str = Depends(require_operator),
        svc: FleetServices = Depends(get_services),
    ):
        try:
            version, spec = svc.controller.set_desired_capacity(
                req.desired,
                min_size=req.min_size,
                max_size=req.max_size,
                image=req.image,
                holder=f"operator-{operator}-{secrets.token_hex(4)}",
            )
        except (LockUnavailable, StaleWrite) as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        db.log_event("INFO", f"Operator '{operator}' set desired capacity to {spec.desired}", fleet=svc.controller.fleet)
        return SetCapacityResponse(version=version, spec=CapacitySpecModel(**asdict(spec)))

    @app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"])
    async def proxy(path: str, request: Request, svc: FleetServices = Depends(get_services)):
        route_req = RouteRequest(
            path="/" + path,
            method=request.method,
            query=request.url.query,
            headers=dict(request.headers),
            body=await request.body(),
        )
        try:
            resp = await run_in_threadpool(svc.router.route, route_req)
        except NoHealthyTargets as e:
            return Response(content=str(e), status_code=status.HTTP_503_SERVICE_UNAVAILABLE, media_type="text/plain")
        headers = dict(resp.headers)
        if resp.member_id:
            headers["x-fcc-member"] = resp.member_id
        return Response(content=resp.body, status_code=resp.status_code, headers=headers)

    return app


app = create_app()
