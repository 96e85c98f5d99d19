from __future__ import annotations

import json
import os
import subprocess
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .logging import get_logger
from .util.errors import ProfileError

LOG = get_logger(__name__)

SYSTEM_PROFILE_ID = "system"
DEFAULT_PROFILE_STORE = Path(".aws-local-dashboard-profiles.json")
CREDENTIAL_CHECK_TIMEOUT_SECONDS = 30.0

CredentialValidator = Callable[[Optional[Dict[str, str]]], bool]


class ProfileSource(str, Enum):
    SYSTEM = "system"
    CUSTOM = "custom"


@dataclass(frozen=True)
class Profile:
    id: str
    name: str
    access_key_id: str
    secret_access_key: str
    session_token: str = ""
    region: str = ""
    source: ProfileSource = ProfileSource.CUSTOM

    def env(self) -> Dict[str, str]:
        return credential_env(self.access_key_id, self.secret_access_key, self.session_token, self.region)


@dataclass(frozen=True)
class PublicProfile:
    id: str
    name: str
    source: ProfileSource


@dataclass(frozen=True)
class ProfileStatus:
    system_available: bool
    active_id: str
    profiles: List[PublicProfile] = field(default_factory=list)


def credential_env(access_key_id: str, secret_access_key: str, session_token: str = "", region: str = "") -> Dict[str, str]:
    env: Dict[str, str] = {}
    if access_key_id:
        env["AWS_ACCESS_KEY_ID"] = access_key_id
    if secret_access_key:
        env["AWS_SECRET_ACCESS_KEY"] = secret_access_key
    if session_token:
        env["AWS_SESSION_TOKEN"] = session_token
    if region:
        env["AWS_DEFAULT_REGION"] = region
    # Explicit keys make the instance metadata lookup pointless and slow.
    env["AWS_EC2_METADATA_DISABLED"] = "true"
    return env


def make_sts_validator(aws_cli: str = "aws", timeout: float = CREDENTIAL_CHECK_TIMEOUT_SECONDS) -> CredentialValidator:
    """
    Build a validator that runs `sts get-caller-identity` with the given
    environment overrides (None = process environment).
    """

    def _validate(overrides: Optional[Dict[str, str]]) -> bool:
        env = None
        if overrides is not None:
            env = dict(os.environ)
            env.update(overrides)
        try:
            proc = subprocess.run(
                [aws_cli, "sts", "get-caller-identity", "--output", "json"],
                capture_output=True,
                env=env,
                timeout=timeout,
            )
        except (OSError, subprocess.TimeoutExpired):
            return False
        if proc.returncode != 0:
            # stderr is not logged; it can echo the access key id.
            return False
        try:
            return isinstance(json.loads(proc.stdout or b""), dict)
        except ValueError:
            return False

    return _validate


class ProfileManager:
    """
    Tracks the system credentials and user-added credential profiles.

    Custom profiles are persisted to a local JSON file (best effort) so they
    survive restarts. Secrets are never exposed through `status()`.
    """

    def __init__(
        self,
        store_path: Optional[Path] = DEFAULT_PROFILE_STORE,
        validator: Optional[CredentialValidator] = None,
    ) -> None:
        self._lock = threading.RLock()
        self._profiles: Dict[str, Profile] = {}
        self._active_id = ""
        self._system_available = False
        self._next_id = 1
        self._store_path = Path(store_path) if store_path else None
        self._validator = validator or make_sts_validator()
        self._load()

    def probe_system(self) -> bool:
        """Check whether the process credentials work; activate them if nothing else is."""
        ok = self._validator(None)
        with self._lock:
            self._system_available = ok
            if ok and not self._active_id:
                self._active_id = SYSTEM_PROFILE_ID
        LOG.info("System credentials probed", extra={"system_available": ok})
        return ok

    def status(self) -> ProfileStatus:
        with self._lock:
            pubs = [PublicProfile(id=p.id, name=p.name, source=p.source) for p in self._profiles.values()]
            return ProfileStatus(system_available=self._system_available, active_id=self._resolved_active(), profiles=pubs)

    def _resolved_active(self) -> str:
        if not self._active_id and self._system_available:
            return SYSTEM_PROFILE_ID
        return self._active_id

    def active_id(self) -> str:
        with self._lock:
            return self._resolved_active()

    def active_env(self) -> Dict[str, str]:
        """Environment overrides for the active custom profile; empty for system credentials."""
        with self._lock:
            if not self._active_id or self._active_id == SYSTEM_PROFILE_ID:
                return {}
            profile = self._profiles.get(self._active_id)
            return profile.env() if profile else {}

    def add_and_activate(
        self,
        name: str,
        access_key_id: str,
        secret_access_key: str,
        session_token: str = "",
        region: str = "",
    ) -> Profile:
        if not (name or "").strip():
            raise ProfileError("profile name is required")
        if not access_key_id or not secret_access_key:
            raise ProfileError("access key id and secret access key are required")

        env = credential_env(access_key_id, secret_access_key, session_token, region)
        if not self._validator(env):
            raise ProfileError("unable to validate credentials with AWS (sts get-caller-identity failed)")

        with self._lock:
            profile = Profile(
                id=str(self._next_id),
                name=name,
                access_key_id=access_key_id,
                secret_access_key=secret_access_key,
                session_token=session_token or "",
                region=region or "",
                source=ProfileSource.CUSTOM,
            )
            self._next_id += 1
            self._profiles[profile.id] = profile
            self._active_id = profile.id
            self._save_locked()
        LOG.info("Profile added", extra={"profile_id": profile.id, "profile_name": name})
        return profile

    def set_active(self, profile_id: str) -> None:
        with self._lock:
            if profile_id == SYSTEM_PROFILE_ID:
                if not self._system_available:
                    raise ProfileError("system AWS credentials are not available")
                self._active_id = SYSTEM_PROFILE_ID
                return
            if profile_id not in self._profiles:
                raise ProfileError(f'profile "{profile_id}" not found')
            self._active_id = profile_id
            self._save_locked()

    def _load(self) -> None:
        if self._store_path is None or not self._store_path.exists():
            return
        try:
            state = json.loads(self._store_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            LOG.warning("Ignoring unreadable profile store", extra={"path": str(self._store_path), "error": str(e)})
            return
        if not isinstance(state, dict):
            return

        with self._lock:
            next_id = state.get("nextId")
            if isinstance(next_id, int) and next_id > 0:
                self._next_id = next_id
            if state.get("activeId"):
                self._active_id = str(state["activeId"])
            self._profiles = {}
            for raw in state.get("profiles") or []:
                if not isinstance(raw, dict):
                    continue
                # Entries without both keys cannot be used.
                if not raw.get("accessKeyId") or not raw.get("secretAccessKey"):
                    continue
                profile = Profile(
                    id=str(raw.get("id") or ""),
                    name=str(raw.get("name") or ""),
                    access_key_id=str(raw["accessKeyId"]),
                    secret_access_key=str(raw["secretAccessKey"]),
                    session_token=str(raw.get("sessionToken") or ""),
                    region=str(raw.get("region") or ""),
                    source=ProfileSource.CUSTOM,
                )
                self._profiles[profile.id] = profile

    def _save_locked(self) -> None:
        if self._store_path is None:
            return
        state = {
            "nextId": self._next_id,
            "activeId": self._active_id,
            "profiles": [_profile_to_store(p) for p in self._profiles.values()],
        }
        tmp_path = self._store_path.with_name(self._store_path.name + ".tmp")
        try:
            # Created 0600 from the start; the store holds secret keys.
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                os.fchmod(fh.fileno(), 0o600)
                fh.write(json.dumps(state, indent=2))
            os.replace(tmp_path, self._store_path)
        except OSError as e:
            LOG.warning("Failed to persist profiles", extra={"path": str(self._store_path), "error": str(e)})


def _profile_to_store(profile: Profile) -> Dict[str, str]:
    out = {
        "id": profile.id,
        "name": profile.name,
        "accessKeyId": profile.access_key_id,
        "secretAccessKey": profile.secret_access_key,
        "source": profile.source.value,
    }
    if profile.session_token:
        out["sessionToken"] = profile.session_token
    if profile.region:
        out["region"] = profile.region
    return out
