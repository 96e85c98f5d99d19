from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool

from .awscli.aggregator import RegionAggregator
from .awscli.cost import CostService
from .awscli.executor import CLIExecutor, Executor
from .awscli.resources import (
    CachedResourceService,
    ResourceKindRegistry,
    ResourceLookup,
    ResourceService,
    default_registry,
    summarize_resources,
)
from .cache import TTLCache
from .commands import CommandManager, is_safe_aws_args
from .config import ServerConfig
from .logging import get_logger
from .profiles import CredentialValidator, ProfileManager, make_sts_validator
from .util.concurrency import CancelToken
from .util.errors import CostExplorerDisabledError, http_status_for
from .util.serialization import to_json_dict

LOG = get_logger(__name__)

INDEX_FILE = "index.html"
COST_EXPLORER_DISABLED_DETAILS = (
    "AWS Cost Explorer is not enabled for this account. Enable it in the AWS console to view cost data."
)
CLI_USAGE_MARKERS = ("usage: aws", "argument command: Invalid choice")


@dataclass
class DashboardServices:
    """Component instances shared by the request handlers of one app."""

    config: ServerConfig
    profiles: ProfileManager
    resources: ResourceLookup
    registry: ResourceKindRegistry
    costs: CostService
    commands: CommandManager
    caches: List[TTLCache[Any]] = field(default_factory=list)

    def clear_caches(self) -> None:
        for cache in self.caches:
            cache.clear()


def build_services(
    cfg: ServerConfig,
    *,
    validator: Optional[CredentialValidator] = None,
    executor: Optional[Executor] = None,
) -> DashboardServices:
    """
    Wire the profile manager, aws CLI executor, caches and services for a config.
    Probes the system credentials once so the active profile is known up front.
    """
    profiles = ProfileManager(
        store_path=cfg.profile_store,
        validator=validator or make_sts_validator(cfg.aws_cli),
    )
    profiles.probe_system()

    if executor is None:
        executor = CLIExecutor(profiles, aws_cli=cfg.aws_cli, timeout_seconds=cfg.command_timeout_seconds)

    registry = default_registry()
    aggregator = RegionAggregator(executor, max_workers=cfg.workers_region, sort_by_region=cfg.sort_by_region)
    resource_cache: TTLCache[Any] = TTLCache(cfg.cache_ttl_seconds)
    cost_cache: TTLCache[Any] = TTLCache(cfg.cache_ttl_seconds)

    return DashboardServices(
        config=cfg,
        profiles=profiles,
        resources=CachedResourceService(ResourceService(executor, aggregator, registry), resource_cache, profiles),
        registry=registry,
        costs=CostService(executor, cost_cache, profiles),
        commands=CommandManager.load(executor, cfg.command_config),
        caches=[resource_cache, cost_cache],
    )


def error_response(status: int, error: str, details: str = "") -> JSONResponse:
    body: Dict[str, Any] = {"error": error}
    if details:
        body["details"] = details
    return JSONResponse(body, status_code=status)


def _cost_error(exc: Exception, what: str) -> JSONResponse:
    if isinstance(exc, CostExplorerDisabledError):
        return error_response(503, "Cost Explorer not enabled", COST_EXPLORER_DISABLED_DETAILS)
    return error_response(http_status_for(exc), f"Failed to fetch {what}", str(exc))


def _raw_output(out: bytes) -> Any:
    text = out.decode("utf-8", "replace").strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text


def _is_cli_usage_error(message: str) -> bool:
    return any(marker in message for marker in CLI_USAGE_MARKERS)


class AddProfileRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = ""
    access_key_id: str = Field("", alias="accessKeyId")
    secret_access_key: str = Field("", alias="secretAccessKey")
    session_token: str = Field("", alias="sessionToken")
    region: str = ""


class SelectProfileRequest(BaseModel):
    id: str = ""


class ExecuteCommandRequest(BaseModel):
    id: str = ""
    region: str = ""


class ExecuteRawRequest(BaseModel):
    args: str = ""


def create_app(services: DashboardServices) -> FastAPI:
    """
    Build the FastAPI app: JSON API under /api and the SPA (with index.html
    fallback) for every other path when the static directory exists.
    """
    cfg = services.config
    app = FastAPI(title="AWS Local Dashboard", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.services = services

    def request_token() -> CancelToken:
        return CancelToken(timeout=cfg.request_timeout_seconds)

    async def call(func: Callable[..., Any], *args: Any) -> Any:
        return await run_in_threadpool(func, *args)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        LOG.info(
            "Request",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "duration_ms": int((time.perf_counter() - started) * 1000),
            },
        )
        return response

    @app.exception_handler(RequestValidationError)
    async def invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
        return error_response(400, "Invalid request body", str(exc))

    @app.get("/api/cost")
    async def get_cost(start: str = "", end: str = "") -> Response:
        try:
            overview = await call(services.costs.get_cost_overview, start, end, request_token())
        except Exception as e:
            LOG.error("Cost overview failed", extra={"error": str(e)})
            return _cost_error(e, "cost overview")
        return JSONResponse({"overview": to_json_dict(overview)})

    @app.get("/api/services")
    async def get_services(start: str = "", end: str = "") -> Response:
        token = request_token()
        try:
            overview = await call(services.costs.get_cost_overview, start, end, token)
        except Exception as e:
            LOG.error("Cost overview failed", extra={"error": str(e)})
            return _cost_error(e, "cost overview")
        try:
            costs = await call(services.costs.get_service_costs, start, end, token)
        except Exception as e:
            LOG.error("Service costs failed", extra={"error": str(e)})
            return _cost_error(e, "service costs")
        return JSONResponse({"overview": to_json_dict(overview), "services": to_json_dict(costs)})

    @app.get("/api/services/{service}/resources")
    async def get_service_resources(service: str, region: str = "") -> Response:
        try:
            res = await call(services.resources.get_resources, service, region, request_token())
        except Exception as e:
            LOG.error("Resource fetch failed", extra={"service": service, "region": region, "error": str(e)})
            return error_response(500, "Failed to fetch resources", str(e))
        return JSONResponse(res.to_dict())

    @app.get("/api/resources/summary")
    async def get_resources_summary() -> Response:
        summaries = await call(summarize_resources, services.resources, services.registry, request_token())
        return JSONResponse({"summaries": to_json_dict(summaries)})

    @app.get("/api/profiles")
    async def get_profiles() -> Response:
        return JSONResponse(to_json_dict(services.profiles.status()))

    @app.post("/api/profiles")
    async def add_profile(body: AddProfileRequest) -> Response:
        try:
            await call(
                services.profiles.add_and_activate,
                body.name,
                body.access_key_id,
                body.secret_access_key,
                body.session_token,
                body.region,
            )
        except Exception as e:
            return error_response(http_status_for(e), "Failed to add profile", str(e))
        return JSONResponse(to_json_dict(services.profiles.status()))

    @app.post("/api/profiles/select")
    async def select_profile(body: SelectProfileRequest) -> Response:
        try:
            services.profiles.set_active(body.id)
        except Exception as e:
            return error_response(http_status_for(e), "Failed to select profile", str(e))
        return JSONResponse(to_json_dict(services.profiles.status()))

    @app.post("/api/cache/clear", status_code=204)
    async def clear_cache() -> Response:
        services.clear_caches()
        LOG.info("Caches cleared")
        return Response(status_code=204)

    @app.get("/api/commands")
    async def list_commands() -> Response:
        return JSONResponse(to_json_dict(services.commands.list()))

    @app.post("/api/commands/execute")
    async def execute_command(body: ExecuteCommandRequest) -> Response:
        try:
            out, args = await call(services.commands.execute, body.id, body.region, request_token())
        except Exception as e:
            msg = str(e)
            if _is_cli_usage_error(msg):
                return error_response(
                    400,
                    "Invalid AWS command configuration",
                    "The configured command is not a valid aws CLI command. Please check command-config.json.",
                )
            return error_response(400, "Failed to execute command", msg)
        return JSONResponse({"command": "aws " + " ".join(args), "output": _raw_output(out)})

    @app.post("/api/commands/execute-raw")
    async def execute_raw_command(body: ExecuteRawRequest) -> Response:
        fields = body.args.split()
        if not fields:
            return error_response(400, "No command provided")
        if not is_safe_aws_args(fields):
            LOG.warning("Raw command blocked", extra={"command_args": " ".join(fields)})
            return error_response(
                400,
                "Command blocked by safety filter",
                "Only read/list/describe operations are allowed from the dashboard.",
            )
        try:
            out, args = await call(services.commands.execute_raw, fields, request_token())
        except Exception as e:
            msg = str(e)
            if _is_cli_usage_error(msg):
                return error_response(
                    400,
                    "Invalid AWS CLI syntax",
                    "Use: <service> <operation> [parameters], e.g. 'ec2 describe-instances --region ap-south-1'.",
                )
            return error_response(400, "Failed to execute command", msg)
        return JSONResponse({"command": "aws " + " ".join(args), "output": _raw_output(out)})

    @app.api_route("/api/{rest:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"])
    async def api_not_found(rest: str) -> Response:
        return error_response(404, "Not found")

    static_root = Path(cfg.static_dir).resolve()

    @app.get("/{full_path:path}")
    async def spa(full_path: str) -> Response:
        index = static_root / INDEX_FILE
        if not static_root.is_dir():
            return error_response(404, "Not found")
        candidate = (static_root / full_path).resolve()
        # Stay inside the static root.
        if full_path and candidate.is_file() and static_root in candidate.parents:
            return FileResponse(candidate)
        if index.is_file():
            return FileResponse(index)
        return error_response(404, "Not found")

    return app
