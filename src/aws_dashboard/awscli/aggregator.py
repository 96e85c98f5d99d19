from __future__ import annotations

from dataclasses import dataclass, field
from time import perf_counter
from typing import Any, Callable, Generic, List, Optional, Sequence, TypeVar

from ..logging import get_logger
from ..util.concurrency import CancelToken, iter_completed
from ..util.errors import is_skippable
from .executor import Executor
from .regions import list_regions

LOG = get_logger(__name__)

ALL_REGIONS = "all"
DEFAULT_MAX_CONCURRENT = 5
SKIPPED_REGIONS_PREFIX = "Skipped regions due to authentication errors: "

R = TypeVar("R")

RegionFetch = Callable[[str, CancelToken], Sequence[R]]
RegionLister = Callable[[Executor, Optional[CancelToken]], List[str]]


def is_all_regions(selector: Optional[str]) -> bool:
    return (selector or "").strip().lower() == ALL_REGIONS


def skipped_regions_message(skipped: Sequence[str]) -> str:
    if not skipped:
        return ""
    return SKIPPED_REGIONS_PREFIX + ", ".join(skipped)


@dataclass
class AggregateOutcome(Generic[R]):
    records: List[R] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return skipped_regions_message(self.skipped)


class RegionAggregator:
    """
    Fan a per-region fetch out over every usable region and merge the results.

    At most `max_workers` fetches run at once. A failure classified as
    skippable drops that region and is reported through the outcome's
    message; any other failure cancels outstanding fetches and is raised
    unchanged, discarding whatever other regions already returned.
    """

    def __init__(
        self,
        executor: Executor,
        *,
        max_workers: int = DEFAULT_MAX_CONCURRENT,
        sort_by_region: bool = False,
        region_lister: RegionLister = list_regions,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self._executor = executor
        self._max_workers = max_workers
        self._sort_by_region = sort_by_region
        self._region_lister = region_lister

    @property
    def max_workers(self) -> int:
        return self._max_workers

    def aggregate(
        self,
        fetch: RegionFetch[R],
        cancel: Optional[CancelToken] = None,
        *,
        label: str = "",
    ) -> AggregateOutcome[R]:
        token = cancel.child() if cancel is not None else CancelToken()
        token.raise_if_cancelled()
        started = perf_counter()

        regions = self._region_lister(self._executor, token)

        outcome: AggregateOutcome[R] = AggregateOutcome()
        results = iter_completed(lambda region: fetch(region, token), regions, self._max_workers)
        try:
            for region, records, error in results:
                if error is None:
                    outcome.records.extend(records or [])
                    continue
                if is_skippable(error):
                    LOG.warning(
                        "Skipping region after authentication/endpoint error",
                        extra={"service": label, "region": region, "error": str(error)},
                    )
                    outcome.skipped.append(region)
                    continue
                LOG.error(
                    "Aggregation aborted",
                    extra={"service": label, "region": region, "error": str(error)},
                )
                raise error
        finally:
            # Stops in-flight CLI calls before the pool joins them.
            token.cancel("aggregation finished")
            results.close()

        if self._sort_by_region:
            outcome.records.sort(key=_region_of)
            outcome.skipped.sort()

        LOG.info(
            "Aggregated regions",
            extra={
                "service": label,
                "regions": len(regions),
                "records": len(outcome.records),
                "skipped": len(outcome.skipped),
                "duration_ms": int((perf_counter() - started) * 1000),
            },
        )
        return outcome


def _region_of(record: Any) -> str:
    return str(getattr(record, "region", "") or "")
