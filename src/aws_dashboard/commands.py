from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml

from .awscli.executor import Executor
from .logging import get_logger
from .util.concurrency import CancelToken
from .util.errors import ConfigError, UnknownCommandError

LOG = get_logger(__name__)

DEFAULT_COMMAND_CONFIG = Path("command-config.json")

# Matched against the lower-cased, space-joined args; mutating verbs only.
BLOCKED_FRAGMENTS = (
    " delete-",
    " delete",
    " terminate-",
    " terminate",
    " stop-",
    " stop ",
    " start-",
    " start ",
    " reboot-",
    " reboot",
    " destroy",
    " drop-",
    " modify-",
    " update-",
    " put-",
    " create-",
    " attach-",
    " detach-",
)


@dataclass(frozen=True)
class Command:
    id: str
    label: str
    description: str
    service: str
    args: List[str] = field(default_factory=list)
    supports_region: bool = False


@dataclass(frozen=True)
class PublicCommand:
    id: str
    label: str
    description: str
    service: str
    supports_region: bool


def is_safe_aws_args(args: Sequence[str]) -> bool:
    """Conservative blocklist for raw commands typed into the dashboard."""
    if not args:
        return False
    joined = " ".join(args).lower()
    return not any(fragment in joined for fragment in BLOCKED_FRAGMENTS)


def _parse_command_file(path: Path) -> List[Dict[str, Any]]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"failed to read command config: {e}") from e
    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            data = yaml.safe_load(text) or []
        else:
            data = json.loads(text)
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"failed to parse command config: {e}") from e
    if not isinstance(data, list):
        raise ConfigError("failed to parse command config: top-level value must be a list")
    return [item for item in data if isinstance(item, dict)]


class CommandManager:
    """Named read-only aws CLI commands loaded from a config file."""

    def __init__(self, executor: Executor, commands: Optional[Dict[str, Command]] = None) -> None:
        self._executor = executor
        self._commands: Dict[str, Command] = dict(commands or {})

    @classmethod
    def load(cls, executor: Executor, path: Optional[Path] = None) -> "CommandManager":
        """
        Load commands from a JSON or YAML list. A missing file yields an empty
        manager; entries without an id or args are skipped.
        """
        config_path = Path(path) if path else DEFAULT_COMMAND_CONFIG
        commands: Dict[str, Command] = {}
        if config_path.exists():
            for raw in _parse_command_file(config_path):
                cmd_id = str(raw.get("id") or "")
                args = raw.get("args") or []
                if not cmd_id or not isinstance(args, list) or not args:
                    continue
                commands[cmd_id] = Command(
                    id=cmd_id,
                    label=str(raw.get("label") or ""),
                    description=str(raw.get("description") or ""),
                    service=str(raw.get("service") or ""),
                    args=[str(a) for a in args],
                    supports_region=bool(raw.get("supportsRegion", False)),
                )
        LOG.info("Loaded command config", extra={"path": str(config_path), "commands": len(commands)})
        return cls(executor, commands)

    def list(self) -> List[PublicCommand]:
        return [
            PublicCommand(
                id=c.id,
                label=c.label,
                description=c.description,
                service=c.service,
                supports_region=c.supports_region,
            )
            for c in sorted(self._commands.values(), key=lambda c: c.id)
        ]

    def execute(
        self, command_id: str, region: str = "", cancel: Optional[CancelToken] = None
    ) -> Tuple[bytes, List[str]]:
        """Run a configured command; returns (raw JSON output, args used)."""
        cmd = self._commands.get(command_id)
        if cmd is None:
            raise UnknownCommandError(f'unknown command id "{command_id}"')
        args = list(cmd.args)
        if cmd.supports_region and (region or "").strip():
            args.extend(["--region", region.strip()])
        return self._executor.run_json(args, cancel), args

    def execute_raw(self, args: Sequence[str], cancel: Optional[CancelToken] = None) -> Tuple[bytes, List[str]]:
        """Run arbitrary args; callers must vet them with is_safe_aws_args first."""
        if not args:
            raise UnknownCommandError("no arguments provided")
        argv = list(args)
        return self._executor.run_json(argv, cancel), argv
