from __future__ import annotations

import argparse
import json
import os
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

# --------
# Defaults
# --------
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8080
DEFAULT_STATIC_DIR = "./static"
DEFAULT_CACHE_TTL_SECONDS = 60.0
DEFAULT_WORKERS_REGION = 5
DEFAULT_REQUEST_TIMEOUT_SECONDS = 120.0
DEFAULT_AWS_CLI = "aws"
DEFAULT_COMMAND_CONFIG = "command-config.json"
DEFAULT_PROFILE_STORE = ".aws-local-dashboard-profiles.json"
ALLOWED_CONFIG_KEYS = {
    "host",
    "port",
    "static_dir",
    "cache_ttl_seconds",
    "workers_region",
    "request_timeout_seconds",
    "command_timeout_seconds",
    "sort_by_region",
    "aws_cli",
    "command_config",
    "profile_store",
    "json_logs",
    "log_level",
    "log_file",
}
BOOL_CONFIG_KEYS = {"sort_by_region", "json_logs"}
INT_CONFIG_KEYS = {"port", "workers_region"}
FLOAT_CONFIG_KEYS = {"cache_ttl_seconds", "request_timeout_seconds", "command_timeout_seconds"}
PATH_CONFIG_KEYS = {"static_dir", "command_config", "profile_store", "log_file"}
STR_CONFIG_KEYS = {"host", "aws_cli", "log_level"}


@dataclass(frozen=True)
class ServerConfig:
    # Server
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    static_dir: Path = Path(DEFAULT_STATIC_DIR)
    json_logs: bool = False
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    # Performance
    cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS
    workers_region: int = DEFAULT_WORKERS_REGION
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    command_timeout_seconds: Optional[float] = None
    sort_by_region: bool = False

    # AWS CLI / local state
    aws_cli: str = DEFAULT_AWS_CLI
    command_config: Path = Path(DEFAULT_COMMAND_CONFIG)
    profile_store: Path = Path(DEFAULT_PROFILE_STORE)

    # Query (resources/cost subcommands)
    service: Optional[str] = None
    region: str = ""
    start: str = ""
    end: str = ""


def _parse_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            data = yaml.safe_load(text) or {}
        elif path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            # Try YAML first then JSON
            try:
                data = yaml.safe_load(text) or {}
            except yaml.YAMLError:
                data = json.loads(text)
    except (ValueError, yaml.YAMLError) as e:
        raise ValueError(f"Failed to parse config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("Top-level config must be an object")
    return data


def _env_str(*names: str) -> Optional[str]:
    """First non-empty value among the given env vars."""
    for name in names:
        raw = os.getenv(name)
        if raw is None:
            continue
        raw = raw.strip()
        if raw:
            return raw
    return None


def _env_bool(name: str) -> Optional[bool]:
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip().lower()
    if not raw:
        return None
    return raw in {"1", "true", "yes", "on"}


def _env_int(*names: str) -> Optional[int]:
    raw = _env_str(*names)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _env_float(*names: str) -> Optional[float]:
    raw = _env_str(*names)
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def _coerce_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        raw = value.strip().lower()
        if raw in {"1", "true", "yes", "on"}:
            return True
        if raw in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"Config field '{key}' must be a boolean")


def _coerce_int(key: str, value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return int(value)
        except ValueError:
            pass
    raise ValueError(f"Config field '{key}' must be an integer")


def _coerce_float(key: str, value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str) and value.strip():
        try:
            return float(value)
        except ValueError:
            pass
    raise ValueError(f"Config field '{key}' must be a number")


def _normalize_config_file(data: Dict[str, Any]) -> Dict[str, Any]:
    unknown = sorted(set(data.keys()) - ALLOWED_CONFIG_KEYS)
    if unknown:
        warnings.warn(f"Unknown config keys ignored: {', '.join(unknown)}")
    normalized: Dict[str, Any] = {}
    for key, value in data.items():
        if key not in ALLOWED_CONFIG_KEYS:
            continue
        if value is None:
            normalized[key] = None
            continue
        if key in BOOL_CONFIG_KEYS:
            normalized[key] = _coerce_bool(key, value)
        elif key in INT_CONFIG_KEYS:
            normalized[key] = _coerce_int(key, value)
        elif key in FLOAT_CONFIG_KEYS:
            normalized[key] = _coerce_float(key, value)
        elif key in PATH_CONFIG_KEYS:
            if isinstance(value, (str, Path)):
                normalized[key] = value
            else:
                raise ValueError(f"Config field '{key}' must be a string path")
        elif key in STR_CONFIG_KEYS:
            if isinstance(value, str):
                normalized[key] = value
            else:
                raise ValueError(f"Config field '{key}' must be a string")
        else:
            normalized[key] = value
    return _compact_dict(normalized)


def _compact_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Drop keys with None values so they don't override lower-precedence config.
    """
    return {k: v for k, v in data.items() if v is not None}


def _merge_dicts(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    """
    Shallow merge: values in b override a.
    """
    merged = dict(a)
    merged.update(b)
    return merged


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="aws-dash", description="Local AWS dashboard")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # common flags builder
    def add_common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", type=Path, help="Optional YAML/JSON config file")
        p.add_argument(
            "--json-logs",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="Enable JSON logs",
        )
        p.add_argument("--log-level", default=None, help="Log level (INFO, DEBUG, ...)")
        p.add_argument("--log-file", type=Path, default=None, help="Also write logs to this file")
        p.add_argument("--aws-cli", default=None, help=f"aws executable (default: {DEFAULT_AWS_CLI})")
        p.add_argument(
            "--workers-region",
            type=int,
            default=None,
            help=f"Max regions queried in parallel (default {DEFAULT_WORKERS_REGION})",
        )
        p.add_argument(
            "--sort-by-region",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="Order aggregated records by region instead of completion order",
        )
        p.add_argument(
            "--command-timeout",
            dest="command_timeout_seconds",
            type=float,
            default=None,
            help="Per aws CLI call timeout in seconds (default: none)",
        )
        p.add_argument("--profile-store", type=Path, default=None, help="Custom profile store (JSON)")

    # serve
    p_serve = subparsers.add_parser("serve", help="Run the dashboard HTTP server")
    add_common(p_serve)
    p_serve.add_argument("--host", default=None, help=f"Bind address (default {DEFAULT_HOST})")
    p_serve.add_argument("--port", type=int, default=None, help=f"Listen port (default {DEFAULT_PORT})")
    p_serve.add_argument("--static-dir", type=Path, default=None, help="Directory with the built SPA")
    p_serve.add_argument(
        "--cache-ttl",
        dest="cache_ttl_seconds",
        type=float,
        default=None,
        help=f"Result cache TTL in seconds (default {int(DEFAULT_CACHE_TTL_SECONDS)})",
    )
    p_serve.add_argument(
        "--request-timeout",
        dest="request_timeout_seconds",
        type=float,
        default=None,
        help=f"Per request deadline in seconds (default {int(DEFAULT_REQUEST_TIMEOUT_SECONDS)})",
    )
    p_serve.add_argument("--command-config", type=Path, default=None, help="Named command config (JSON/YAML)")

    # list-regions
    p_lr = subparsers.add_parser("list-regions", help="List usable regions")
    add_common(p_lr)

    # resources
    p_res = subparsers.add_parser("resources", help="List resources of one service")
    add_common(p_res)
    p_res.add_argument("service", help="Service key (ec2, vpc, eip, s3, rds, rekognition)")
    p_res.add_argument("--region", default=None, help='Region name, or "all" for every usable region')

    # cost
    p_cost = subparsers.add_parser("cost", help="Show cost overview and per-service costs")
    add_common(p_cost)
    p_cost.add_argument("--start", default=None, help="Inclusive start date (YYYY-MM-DD)")
    p_cost.add_argument("--end", default=None, help="Inclusive end date (YYYY-MM-DD)")

    return parser


def load_server_config(
    args: Optional[argparse.Namespace] = None,
    argv: Optional[list[str]] = None,
) -> Tuple[str, ServerConfig]:
    """
    Build ServerConfig by merging defaults, optional config file, env vars, and CLI args.
    Precedence (low -> high): defaults < config file < env < CLI.

    Returns:
      (command, ServerConfig) where command is the subcommand selected: serve|list-regions|resources|cost
    """
    ns = args if args is not None else build_parser().parse_args(argv)
    command = ns.command

    # defaults
    base: Dict[str, Any] = {
        "host": DEFAULT_HOST,
        "port": DEFAULT_PORT,
        "static_dir": DEFAULT_STATIC_DIR,
        "cache_ttl_seconds": DEFAULT_CACHE_TTL_SECONDS,
        "workers_region": DEFAULT_WORKERS_REGION,
        "request_timeout_seconds": DEFAULT_REQUEST_TIMEOUT_SECONDS,
        "command_timeout_seconds": None,
        "sort_by_region": False,
        "aws_cli": DEFAULT_AWS_CLI,
        "command_config": DEFAULT_COMMAND_CONFIG,
        "profile_store": DEFAULT_PROFILE_STORE,
        "json_logs": False,
        "log_level": "INFO",
        "log_file": None,
    }

    # config file
    file_cfg: Dict[str, Any] = {}
    if getattr(ns, "config", None):
        file_cfg = _normalize_config_file(_parse_config_file(Path(ns.config)))

    # env
    env_cfg: Dict[str, Any] = _compact_dict(
        {
            "host": _env_str("AWS_DASH_HOST"),
            "port": _env_int("AWS_DASH_PORT", "PORT"),
            "static_dir": _env_str("AWS_DASH_STATIC_DIR", "STATIC_DIR"),
            "cache_ttl_seconds": _env_float("AWS_DASH_CACHE_TTL_SECONDS", "CACHE_TTL_SECONDS"),
            "workers_region": _env_int("AWS_DASH_WORKERS_REGION"),
            "request_timeout_seconds": _env_float("AWS_DASH_REQUEST_TIMEOUT_SECONDS"),
            "command_timeout_seconds": _env_float("AWS_DASH_COMMAND_TIMEOUT_SECONDS"),
            "sort_by_region": _env_bool("AWS_DASH_SORT_BY_REGION"),
            "aws_cli": _env_str("AWS_DASH_AWS_CLI"),
            "command_config": _env_str("AWS_DASH_COMMAND_CONFIG", "COMMAND_CONFIG_PATH"),
            "profile_store": _env_str("AWS_DASH_PROFILE_STORE", "PROFILE_STORE_PATH"),
            "json_logs": _env_bool("AWS_DASH_JSON_LOGS"),
            "log_level": _env_str("AWS_DASH_LOG_LEVEL"),
            "log_file": _env_str("AWS_DASH_LOG_FILE"),
        }
    )

    # CLI
    cli_cfg: Dict[str, Any] = _compact_dict(
        {
            "host": getattr(ns, "host", None),
            "port": getattr(ns, "port", None),
            "static_dir": getattr(ns, "static_dir", None),
            "cache_ttl_seconds": getattr(ns, "cache_ttl_seconds", None),
            "workers_region": getattr(ns, "workers_region", None),
            "request_timeout_seconds": getattr(ns, "request_timeout_seconds", None),
            "command_timeout_seconds": getattr(ns, "command_timeout_seconds", None),
            "sort_by_region": getattr(ns, "sort_by_region", None),
            "aws_cli": getattr(ns, "aws_cli", None),
            "command_config": getattr(ns, "command_config", None),
            "profile_store": getattr(ns, "profile_store", None),
            "json_logs": getattr(ns, "json_logs", None),
            "log_level": getattr(ns, "log_level", None),
            "log_file": getattr(ns, "log_file", None),
        }
    )

    merged = _merge_dicts(base, _merge_dicts(file_cfg, _merge_dicts(env_cfg, cli_cfg)))

    workers_region = int(merged["workers_region"])
    if workers_region < 1:
        raise ValueError("workers_region must be >= 1")
    port = int(merged["port"])
    if not 0 < port < 65536:
        raise ValueError(f"port must be between 1 and 65535, got {port}")
    cache_ttl = float(merged["cache_ttl_seconds"])
    if cache_ttl < 0:
        raise ValueError("cache_ttl_seconds must be >= 0")
    request_timeout = float(merged["request_timeout_seconds"])
    if request_timeout <= 0:
        raise ValueError("request_timeout_seconds must be > 0")
    command_timeout = merged.get("command_timeout_seconds")
    # Non-positive means "no per-call timeout".
    command_timeout = float(command_timeout) if command_timeout and float(command_timeout) > 0 else None

    cfg = ServerConfig(
        host=str(merged["host"]),
        port=port,
        static_dir=Path(merged["static_dir"]),
        json_logs=bool(merged["json_logs"]),
        log_level=(merged.get("log_level") or "INFO").upper(),
        log_file=Path(merged["log_file"]) if merged.get("log_file") else None,
        cache_ttl_seconds=cache_ttl,
        workers_region=workers_region,
        request_timeout_seconds=request_timeout,
        command_timeout_seconds=command_timeout,
        sort_by_region=bool(merged["sort_by_region"]),
        aws_cli=str(merged["aws_cli"] or DEFAULT_AWS_CLI),
        command_config=Path(merged["command_config"]),
        profile_store=Path(merged["profile_store"]),
        service=getattr(ns, "service", None),
        region=(getattr(ns, "region", None) or "").strip(),
        start=(getattr(ns, "start", None) or "").strip(),
        end=(getattr(ns, "end", None) or "").strip(),
    )
    return command, cfg


def dump_config(cfg: ServerConfig) -> Dict[str, Any]:
    return {
        "host": cfg.host,
        "port": cfg.port,
        "static_dir": str(cfg.static_dir),
        "json_logs": cfg.json_logs,
        "log_level": cfg.log_level,
        "log_file": str(cfg.log_file) if cfg.log_file else None,
        "cache_ttl_seconds": cfg.cache_ttl_seconds,
        "workers_region": cfg.workers_region,
        "request_timeout_seconds": cfg.request_timeout_seconds,
        "command_timeout_seconds": cfg.command_timeout_seconds,
        "sort_by_region": cfg.sort_by_region,
        "aws_cli": cfg.aws_cli,
        "command_config": str(cfg.command_config),
        "profile_store": str(cfg.profile_store),
    }
