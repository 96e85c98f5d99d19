from __future__ import annotations

import logging
import sys
from time import perf_counter
from typing import Any, Dict, Optional

import uvicorn

from .awscli.aggregator import RegionAggregator
from .awscli.cost import CostService
from .awscli.executor import CLIExecutor
from .awscli.regions import list_regions
from .awscli.resources import ResourceService, default_registry
from .cache import TTLCache
from .config import ServerConfig, dump_config, load_server_config
from .logging import LogConfig, get_logger, setup_logging
from .profiles import ProfileManager
from .server import build_services, create_app
from .util.concurrency import CancelToken
from .util.errors import ConfigError, as_exit_code
from .util.tables import render_cost_table, render_records_table

LOG = get_logger(__name__)


class _StepTimers:
    def __init__(self) -> None:
        self._starts: Dict[str, float] = {}

    def start(self, key: str) -> None:
        self._starts[key] = perf_counter()

    def finish(self, key: str) -> Optional[int]:
        started = self._starts.pop(key, None)
        if started is None:
            return None
        return int((perf_counter() - started) * 1000)


def _log_event(
    logger: Any,
    level: int,
    message: str,
    *,
    step: str,
    phase: str,
    timers: Optional[_StepTimers] = None,
    **extra: Any,
) -> None:
    duration_ms = None
    if timers is not None:
        if phase == "start":
            timers.start(step)
        elif phase in {"complete", "error"}:
            duration_ms = timers.finish(step)
    payload: Dict[str, Any] = {"step": step, "phase": phase, "event": f"{step}.{phase}"}
    if duration_ms is not None:
        payload["duration_ms"] = duration_ms
    payload.update(extra)
    logger.log(level, message, extra=payload)


def _cli_executor(cfg: ServerConfig) -> CLIExecutor:
    # Honors the custom profile last selected in the dashboard, if any.
    profiles = ProfileManager(store_path=cfg.profile_store)
    return CLIExecutor(profiles, aws_cli=cfg.aws_cli, timeout_seconds=cfg.command_timeout_seconds)


def _token(cfg: ServerConfig) -> CancelToken:
    return CancelToken(timeout=cfg.request_timeout_seconds)


def cmd_serve(cfg: ServerConfig) -> int:
    timers = _StepTimers()
    _log_event(LOG, logging.INFO, "Starting dashboard", step="serve", phase="start", timers=timers, **dump_config(cfg))
    services = build_services(cfg)
    if not services.profiles.status().system_available:
        LOG.warning("System AWS credentials unavailable; add a profile from the dashboard")
    app = create_app(services)
    uvicorn.run(app, host=cfg.host, port=cfg.port, log_config=None)
    _log_event(LOG, logging.INFO, "Dashboard stopped", step="serve", phase="complete", timers=timers)
    return 0


def cmd_list_regions(cfg: ServerConfig) -> int:
    regions = list_regions(_cli_executor(cfg), _token(cfg))
    for r in regions:
        print(r)
    return 0


def cmd_resources(cfg: ServerConfig) -> int:
    if not cfg.service:
        raise ConfigError("service is required")
    executor = _cli_executor(cfg)
    registry = default_registry()
    kind = registry.get(cfg.service)
    if kind is None:
        raise ConfigError(f"unknown service: {cfg.service}")
    aggregator = RegionAggregator(executor, max_workers=cfg.workers_region, sort_by_region=cfg.sort_by_region)
    service = ResourceService(executor, aggregator, registry)

    timers = _StepTimers()
    _log_event(
        LOG, logging.INFO, "Fetching resources", step="resources", phase="start", timers=timers,
        service=kind.key, region=cfg.region,
    )
    res = service.get_resources(kind.key, cfg.region, _token(cfg))
    _log_event(
        LOG, logging.INFO, "Fetched resources", step="resources", phase="complete", timers=timers,
        service=kind.key, records=kind.count(res),
    )
    render_records_table(kind.display_name, getattr(res, kind.field_name))
    if res.message:
        print(res.message)
    return 0


def cmd_cost(cfg: ServerConfig) -> int:
    costs = CostService(_cli_executor(cfg), TTLCache(cfg.cache_ttl_seconds))
    token = _token(cfg)
    overview = costs.get_cost_overview(cfg.start, cfg.end, token)
    services = costs.get_service_costs(cfg.start, cfg.end, token)
    render_cost_table(overview, services)
    return 0


def main() -> None:
    try:
        command, cfg = load_server_config()
        setup_logging(LogConfig(level=cfg.log_level, json_logs=cfg.json_logs, log_file=cfg.log_file))

        if command == "serve":
            code = cmd_serve(cfg)
        elif command == "list-regions":
            code = cmd_list_regions(cfg)
        elif command == "resources":
            code = cmd_resources(cfg)
        elif command == "cost":
            code = cmd_cost(cfg)
        else:
            raise ConfigError(f"Unknown command: {command}")

        sys.exit(code)
    except SystemExit:
        raise
    except BrokenPipeError:
        # Common when users pipe to `head` or similar tools.
        sys.exit(0)
    except Exception as e:
        # Map to consistent exit code and log
        setup_logging(LogConfig())
        LOG.error("Execution failed", extra={"error": str(e)})
        sys.exit(as_exit_code(e))


if __name__ == "__main__":
    main()
