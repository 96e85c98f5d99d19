from __future__ import annotations

from typing import List, Optional

from ..util.concurrency import CancelToken
from .executor import Executor, decode_json_object


def list_regions(executor: Executor, cancel: Optional[CancelToken] = None) -> List[str]:
    """
    Return region names usable by the current credentials (e.g., 'us-east-1').

    Regions reported as 'not-opted-in' are excluded. Order follows the CLI output.
    """
    out = executor.run_json(["ec2", "describe-regions", "--all-regions"], cancel)
    payload = decode_json_object(out, "describe-regions")

    regions: List[str] = []
    for entry in payload.get("Regions") or []:
        name = entry.get("RegionName") or ""
        if not name:
            continue
        if str(entry.get("OptInStatus") or "").lower() == "not-opted-in":
            continue
        regions.append(name)
    return regions
