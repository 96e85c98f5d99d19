from __future__ import annotations

import json
import os
import subprocess
from typing import Any, Dict, Optional, Protocol, Sequence

from ..logging import get_logger
from ..util.concurrency import CancelToken
from ..util.errors import CommandError, OperationCancelled, OutputParseError, classify_error_message

LOG = get_logger(__name__)

POLL_INTERVAL_SECONDS = 0.1


class EnvProvider(Protocol):
    def active_env(self) -> Dict[str, str]:
        ...


class Executor(Protocol):
    """Runs read-only aws CLI operations and returns their JSON output."""

    def run_json(self, args: Sequence[str], cancel: Optional[CancelToken] = None) -> bytes:
        ...


class CLIExecutor:
    """
    Executor backed by the local aws binary.

    The active profile's credentials are applied as environment overrides for
    each child process; the user's ~/.aws configuration is never modified.
    """

    def __init__(
        self,
        env_provider: Optional[EnvProvider] = None,
        *,
        aws_cli: str = "aws",
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self._env_provider = env_provider
        self._aws_cli = aws_cli
        self._timeout = timeout_seconds

    def _env(self) -> Optional[Dict[str, str]]:
        if self._env_provider is None:
            return None
        overrides = self._env_provider.active_env()
        if not overrides:
            return None
        env = dict(os.environ)
        env.update(overrides)
        return env

    def run_json(self, args: Sequence[str], cancel: Optional[CancelToken] = None) -> bytes:
        argv = [self._aws_cli, *args, "--output", "json"]
        token = CancelToken(timeout=self._timeout, parent=cancel) if self._timeout else cancel
        if token is not None:
            token.raise_if_cancelled()

        try:
            proc = subprocess.Popen(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=self._env(),
            )
        except FileNotFoundError as e:
            raise CommandError(f"aws cli error: executable not found: {self._aws_cli}") from e

        stdout, stderr = self._communicate(proc, token, args)

        if proc.returncode != 0:
            detail = (stderr or b"").decode("utf-8", "replace").strip()
            if not detail:
                detail = f"exit status {proc.returncode}"
            message = f"aws cli error: {detail}"
            kind = classify_error_message(message)
            LOG.debug(
                "aws cli call failed",
                extra={"operation": " ".join(args[:2]), "error_kind": kind.value},
            )
            raise CommandError(message, kind=kind)
        return stdout or b""

    def _communicate(self, proc: subprocess.Popen, token: Optional[CancelToken], args: Sequence[str]):
        if token is None:
            return proc.communicate()
        while True:
            try:
                return proc.communicate(timeout=POLL_INTERVAL_SECONDS)
            except subprocess.TimeoutExpired:
                if not token.cancelled:
                    continue
                proc.kill()
                proc.communicate()
                LOG.info("aws cli call cancelled", extra={"operation": " ".join(args[:2]), "reason": token.reason})
                raise OperationCancelled(token.reason)


def decode_json_object(out: bytes, operation: str) -> Dict[str, Any]:
    """Decode CLI output that must be a JSON object."""
    try:
        payload = json.loads(out or b"{}")
    except ValueError as e:
        raise OutputParseError(f"failed to parse {operation} output: {e}") from e
    if not isinstance(payload, dict):
        raise OutputParseError(f"failed to parse {operation} output: expected a JSON object")
    return payload
