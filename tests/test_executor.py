from __future__ import annotations

import subprocess
from typing import Any, Dict, List, Optional

import pytest

from aws_dashboard.awscli import executor as executor_mod
from aws_dashboard.awscli.executor import CLIExecutor, decode_json_object
from aws_dashboard.util.concurrency import CancelToken
from aws_dashboard.util.errors import CommandError, ErrorKind, OperationCancelled, OutputParseError


class FakePopen:
    instances: List["FakePopen"] = []
    stdout: bytes = b"{}"
    stderr: bytes = b""
    returncode_value: int = 0
    hang: bool = False

    def __init__(self, argv: List[str], stdout=None, stderr=None, env: Optional[Dict[str, str]] = None) -> None:
        self.argv = argv
        self.env = env
        self.killed = False
        self.returncode: Optional[int] = None
        FakePopen.instances.append(self)

    def communicate(self, timeout: Optional[float] = None):
        if self.hang and not self.killed and timeout is not None:
            raise subprocess.TimeoutExpired(self.argv, timeout)
        self.returncode = -9 if self.killed else self.returncode_value
        return self.stdout, self.stderr

    def kill(self) -> None:
        self.killed = True


@pytest.fixture
def fake_popen(monkeypatch):
    FakePopen.instances = []
    FakePopen.stdout = b"{}"
    FakePopen.stderr = b""
    FakePopen.returncode_value = 0
    FakePopen.hang = False
    monkeypatch.setattr(executor_mod.subprocess, "Popen", FakePopen)
    return FakePopen


class StaticEnv:
    def __init__(self, env: Dict[str, str]) -> None:
        self.env = env

    def active_env(self) -> Dict[str, str]:
        return dict(self.env)


def test_run_json_appends_output_flag(fake_popen) -> None:
    fake_popen.stdout = b'{"Vpcs": []}'

    out = CLIExecutor().run_json(["ec2", "describe-vpcs", "--region", "us-east-1"])

    assert out == b'{"Vpcs": []}'
    assert fake_popen.instances[0].argv == [
        "aws",
        "ec2",
        "describe-vpcs",
        "--region",
        "us-east-1",
        "--output",
        "json",
    ]
    # No active profile: the child inherits the process environment.
    assert fake_popen.instances[0].env is None


def test_run_json_applies_profile_env_overrides(fake_popen, monkeypatch) -> None:
    monkeypatch.setenv("KEEP_ME", "1")
    ex = CLIExecutor(StaticEnv({"AWS_ACCESS_KEY_ID": "AKIAEXAMPLE"}), aws_cli="/opt/aws")

    ex.run_json(["s3api", "list-buckets"])

    proc = fake_popen.instances[0]
    assert proc.argv[0] == "/opt/aws"
    assert proc.env["AWS_ACCESS_KEY_ID"] == "AKIAEXAMPLE"
    assert proc.env["KEEP_ME"] == "1"


def test_nonzero_exit_classified_as_skippable(fake_popen) -> None:
    fake_popen.returncode_value = 255
    fake_popen.stderr = b"An error occurred (AuthFailure) when calling the DescribeInstances operation\n"

    with pytest.raises(CommandError) as excinfo:
        CLIExecutor().run_json(["ec2", "describe-instances"])

    assert excinfo.value.kind is ErrorKind.SKIPPABLE
    assert str(excinfo.value).startswith("aws cli error: An error occurred (AuthFailure)")


def test_nonzero_exit_without_stderr_is_fatal(fake_popen) -> None:
    fake_popen.returncode_value = 2

    with pytest.raises(CommandError) as excinfo:
        CLIExecutor().run_json(["ec2", "describe-instances"])

    assert excinfo.value.kind is ErrorKind.FATAL
    assert str(excinfo.value) == "aws cli error: exit status 2"


def test_missing_binary_is_fatal(monkeypatch) -> None:
    def _raise(*args: Any, **kwargs: Any):
        raise FileNotFoundError("aws")

    monkeypatch.setattr(executor_mod.subprocess, "Popen", _raise)

    with pytest.raises(CommandError) as excinfo:
        CLIExecutor(aws_cli="aws-missing").run_json(["sts", "get-caller-identity"])
    assert not excinfo.value.skippable
    assert "executable not found" in str(excinfo.value)


def test_cancel_kills_child_process(fake_popen, monkeypatch) -> None:
    fake_popen.hang = True
    token = CancelToken()
    token.cancel("request aborted")

    # Cancelled before start: nothing is spawned.
    with pytest.raises(OperationCancelled):
        CLIExecutor().run_json(["ec2", "describe-instances"], token)
    assert fake_popen.instances == []

    clock = {"now": 0.0}
    deadline_token = CancelToken(timeout=1.0, clock=lambda: clock["now"])

    class AdvancingPopen(FakePopen):
        def communicate(self, timeout: Optional[float] = None):
            clock["now"] += 0.6
            return super().communicate(timeout)

    monkeypatch.setattr(executor_mod.subprocess, "Popen", AdvancingPopen)
    with pytest.raises(OperationCancelled, match="deadline exceeded"):
        CLIExecutor().run_json(["ec2", "describe-instances"], deadline_token)
    assert fake_popen.instances[-1].killed


def test_decode_json_object() -> None:
    assert decode_json_object(b'{"a": 1}', "op") == {"a": 1}
    assert decode_json_object(b"", "op") == {}
    with pytest.raises(OutputParseError, match="failed to parse op output"):
        decode_json_object(b"not json", "op")
    with pytest.raises(OutputParseError):
        decode_json_object(b"[1, 2]", "op")
