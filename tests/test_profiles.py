from __future__ import annotations

import json
import os
import stat
import subprocess
import types
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from aws_dashboard import profiles as profiles_mod
from aws_dashboard.profiles import SYSTEM_PROFILE_ID, ProfileManager, credential_env, make_sts_validator
from aws_dashboard.util.errors import ProfileError
from aws_dashboard.util.serialization import to_json_dict


class StubValidator:
    def __init__(self, system_ok: bool = True, custom_ok: bool = True) -> None:
        self.system_ok = system_ok
        self.custom_ok = custom_ok
        self.calls: List[Optional[Dict[str, str]]] = []

    def __call__(self, overrides: Optional[Dict[str, str]]) -> bool:
        self.calls.append(overrides)
        return self.system_ok if overrides is None else self.custom_ok


def test_system_probe_activates_system_profile(tmp_path: Path) -> None:
    mgr = ProfileManager(tmp_path / "profiles.json", validator=StubValidator())

    assert mgr.probe_system()
    status = mgr.status()

    assert status.system_available
    assert status.active_id == SYSTEM_PROFILE_ID
    assert mgr.active_env() == {}


def test_add_profile_validates_and_persists(tmp_path: Path) -> None:
    store = tmp_path / "profiles.json"
    validator = StubValidator(system_ok=False)
    mgr = ProfileManager(store, validator=validator)
    mgr.probe_system()

    profile = mgr.add_and_activate("dev", "AKIA1", "secret1", region="eu-west-1")

    assert profile.id == "1"
    assert mgr.active_id() == "1"
    env = mgr.active_env()
    assert env["AWS_ACCESS_KEY_ID"] == "AKIA1"
    assert env["AWS_DEFAULT_REGION"] == "eu-west-1"
    assert env["AWS_EC2_METADATA_DISABLED"] == "true"
    assert validator.calls[-1]["AWS_SECRET_ACCESS_KEY"] == "secret1"

    saved = json.loads(store.read_text(encoding="utf-8"))
    assert saved["nextId"] == 2
    assert saved["activeId"] == "1"
    assert saved["profiles"][0]["accessKeyId"] == "AKIA1"
    assert "sessionToken" not in saved["profiles"][0]

    reloaded = ProfileManager(store, validator=validator)
    assert reloaded.active_id() == "1"
    assert reloaded.active_env()["AWS_ACCESS_KEY_ID"] == "AKIA1"


@pytest.mark.skipif(os.name != "posix", reason="POSIX file modes")
def test_store_is_never_readable_by_others(tmp_path: Path, monkeypatch) -> None:
    store = tmp_path / "profiles.json"
    store.write_text("{}", encoding="utf-8")
    store.chmod(0o644)
    modes: List[int] = []
    real_replace = os.replace

    def spy_replace(src, dst):
        modes.append(stat.S_IMODE(os.stat(src).st_mode))
        return real_replace(src, dst)

    monkeypatch.setattr(profiles_mod.os, "replace", spy_replace)
    old_umask = os.umask(0o022)
    try:
        mgr = ProfileManager(store, validator=StubValidator())
        mgr.add_and_activate("dev", "AKIA1", "secret1")
    finally:
        os.umask(old_umask)

    assert modes and all(mode == 0o600 for mode in modes)
    assert stat.S_IMODE(store.stat().st_mode) == 0o600
    assert not store.with_name("profiles.json.tmp").exists()


def test_status_never_exposes_secrets(tmp_path: Path) -> None:
    mgr = ProfileManager(tmp_path / "p.json", validator=StubValidator())
    mgr.add_and_activate("dev", "AKIA1", "secret1", session_token="tok")

    rendered = json.dumps(to_json_dict(mgr.status()))

    assert "secret1" not in rendered
    assert "AKIA1" not in rendered
    assert json.loads(rendered)["profiles"] == [{"id": "1", "name": "dev", "source": "custom"}]


def test_rejected_credentials_are_not_added(tmp_path: Path) -> None:
    mgr = ProfileManager(tmp_path / "p.json", validator=StubValidator(custom_ok=False))

    with pytest.raises(ProfileError, match="unable to validate"):
        mgr.add_and_activate("dev", "AKIA1", "bad")
    assert mgr.status().profiles == []


@pytest.mark.parametrize(
    "name,key,secret",
    [("", "AKIA", "s"), ("dev", "", "s"), ("dev", "AKIA", "")],
)
def test_missing_fields_rejected(tmp_path: Path, name: str, key: str, secret: str) -> None:
    validator = StubValidator()
    mgr = ProfileManager(tmp_path / "p.json", validator=validator)

    with pytest.raises(ProfileError):
        mgr.add_and_activate(name, key, secret)
    assert validator.calls == []


def test_set_active(tmp_path: Path) -> None:
    mgr = ProfileManager(tmp_path / "p.json", validator=StubValidator(system_ok=False))
    mgr.probe_system()
    mgr.add_and_activate("a", "AKIAA", "sa")
    mgr.add_and_activate("b", "AKIAB", "sb")

    mgr.set_active("1")
    assert mgr.active_env()["AWS_ACCESS_KEY_ID"] == "AKIAA"

    with pytest.raises(ProfileError, match="not found"):
        mgr.set_active("9")
    with pytest.raises(ProfileError, match="system"):
        mgr.set_active(SYSTEM_PROFILE_ID)


def test_corrupt_store_is_ignored(tmp_path: Path) -> None:
    store = tmp_path / "p.json"
    store.write_text("{not json", encoding="utf-8")

    mgr = ProfileManager(store, validator=StubValidator())

    assert mgr.status().profiles == []


def test_store_entries_without_keys_are_skipped(tmp_path: Path) -> None:
    store = tmp_path / "p.json"
    store.write_text(
        json.dumps(
            {
                "nextId": 3,
                "activeId": "2",
                "profiles": [
                    {"id": "1", "name": "broken", "accessKeyId": "AKIA"},
                    {"id": "2", "name": "ok", "accessKeyId": "AKIA2", "secretAccessKey": "s2"},
                ],
            }
        ),
        encoding="utf-8",
    )

    mgr = ProfileManager(store, validator=StubValidator())

    assert [p.id for p in mgr.status().profiles] == ["2"]
    assert mgr.add_and_activate("new", "AKIA3", "s3").id == "3"


def test_credential_env_omits_empty_values() -> None:
    env = credential_env("AKIA", "s")

    assert env == {"AWS_ACCESS_KEY_ID": "AKIA", "AWS_SECRET_ACCESS_KEY": "s", "AWS_EC2_METADATA_DISABLED": "true"}


def test_sts_validator_checks_json_output(monkeypatch) -> None:
    seen = {}

    def fake_run(argv, capture_output, env, timeout):
        seen["argv"] = argv
        seen["env"] = env
        return types.SimpleNamespace(returncode=0, stdout=b'{"Account": "123"}', stderr=b"")

    monkeypatch.setattr(profiles_mod.subprocess, "run", fake_run)
    validate = make_sts_validator("aws", timeout=5)

    assert validate({"AWS_ACCESS_KEY_ID": "AKIA"})
    assert seen["argv"] == ["aws", "sts", "get-caller-identity", "--output", "json"]
    assert seen["env"]["AWS_ACCESS_KEY_ID"] == "AKIA"

    assert validate(None)
    assert seen["env"] is None


def test_sts_validator_failures(monkeypatch) -> None:
    results = iter(
        [
            types.SimpleNamespace(returncode=255, stdout=b"", stderr=b"InvalidClientTokenId"),
            types.SimpleNamespace(returncode=0, stdout=b"garbage", stderr=b""),
        ]
    )

    def fake_run(argv, capture_output, env, timeout):
        return next(results)

    monkeypatch.setattr(profiles_mod.subprocess, "run", fake_run)
    validate = make_sts_validator()

    assert not validate(None)
    assert not validate(None)

    def timeout_run(argv, capture_output, env, timeout):
        raise subprocess.TimeoutExpired(argv, timeout)

    monkeypatch.setattr(profiles_mod.subprocess, "run", timeout_run)
    assert not validate(None)
