from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Tuple

from ..cache import TTLCache
from ..logging import get_logger
from ..models import CostOverview, ServiceCost
from ..util.concurrency import CancelToken
from ..util.errors import CommandError, CostExplorerDisabledError, OutputParseError
from .executor import Executor, decode_json_object

LOG = get_logger(__name__)

DATE_FORMAT = "%Y-%m-%d"
DEFAULT_CURRENCY = "USD"
COST_METRIC = "UnblendedCost"
NET_ZERO_EPSILON = 1e-7

# (substrings, display name, drilldown key); first match wins.
SERVICE_NAME_TABLE: Tuple[Tuple[Tuple[str, ...], str, str], ...] = (
    (("elastic compute cloud",), "EC2", "ec2"),
    (("virtual private cloud",), "VPC", "vpc"),
    (("elastic ip",), "Elastic IPs", "eip"),
    (("rekognition",), "Rekognition", "rekognition"),
    (("simple storage service", "s3"), "Amazon S3", "s3"),
    (("relational database service",), "RDS", "rds"),
)


class ActiveProfile(Protocol):
    def active_id(self) -> str:
        ...


@dataclass(frozen=True)
class DateRange:
    """Cost Explorer range (exclusive end) plus the inclusive dates shown to users."""

    ce_start: str
    ce_end: str
    display_start: str
    display_end: str


@dataclass(frozen=True)
class CostSnapshot:
    overview: CostOverview
    services: List[ServiceCost]


def normalize_service_name(name: str) -> Tuple[str, str]:
    """
    Map a Cost Explorer service name to (display name, drilldown key).
    Unknown services pass through unchanged with an empty key.
    """
    lowered = name.lower()
    if lowered.startswith("ec2"):
        return "EC2", "ec2"
    for needles, display, key in SERVICE_NAME_TABLE:
        if any(n in lowered for n in needles):
            return display, key
    return name, ""


def _parse_date(value: str) -> Optional[date]:
    try:
        return datetime.strptime(value, DATE_FORMAT).date()
    except ValueError:
        return None


def current_month_range(today: Optional[date] = None) -> DateRange:
    today = today or datetime.now(timezone.utc).date()
    start = today.replace(day=1)
    return DateRange(
        ce_start=start.strftime(DATE_FORMAT),
        ce_end=(today + timedelta(days=1)).strftime(DATE_FORMAT),
        display_start=start.strftime(DATE_FORMAT),
        display_end=today.strftime(DATE_FORMAT),
    )


def normalize_date_range(start: Optional[str], end: Optional[str], today: Optional[date] = None) -> DateRange:
    """
    Turn optional inclusive YYYY-MM-DD dates into a Cost Explorer range.
    Missing, malformed or reversed input falls back to the current UTC month.
    """
    s = (start or "").strip()
    e = (end or "").strip()
    if not s or not e:
        return current_month_range(today)
    start_d = _parse_date(s)
    end_d = _parse_date(e)
    if start_d is None or end_d is None or end_d < start_d:
        return current_month_range(today)
    return DateRange(
        ce_start=start_d.strftime(DATE_FORMAT),
        ce_end=(end_d + timedelta(days=1)).strftime(DATE_FORMAT),
        display_start=start_d.strftime(DATE_FORMAT),
        display_end=end_d.strftime(DATE_FORMAT),
    )


def net_total(usage: float, credits: float) -> float:
    net = usage - credits
    if abs(net) < NET_ZERO_EPSILON:
        return 0.0
    return net


def _iter_group_amounts(groups: List[Dict[str, Any]]) -> Iterator[Tuple[str, float, str]]:
    """Yield (first key, amount, unit) for groups with a parseable metric."""
    for g in groups or []:
        keys = g.get("Keys") or []
        if not keys:
            continue
        metric = (g.get("Metrics") or {}).get(COST_METRIC)
        if not metric:
            continue
        try:
            amount = float(metric.get("Amount"))
        except (TypeError, ValueError):
            continue
        yield keys[0], amount, metric.get("Unit") or ""


def derive_record_type_totals(groups: List[Dict[str, Any]]) -> Tuple[float, float, str]:
    """
    Sum usage and credits from RECORD_TYPE-grouped cost rows.

    Credits arrive as negative amounts; the absolute value is reported.
    Returns (usage_total, credits_applied, currency).
    """
    currency = DEFAULT_CURRENCY
    usage = 0.0
    credits = 0.0
    for record_type, amount, unit in _iter_group_amounts(groups):
        currency = unit or currency
        kind = record_type.lower()
        if kind == "usage":
            usage += amount
        elif kind == "credit":
            credits += abs(amount)
    return usage, credits, currency


def project_service_costs(groups: List[Dict[str, Any]]) -> List[ServiceCost]:
    services: List[ServiceCost] = []
    for name, amount, unit in _iter_group_amounts(groups):
        display, key = normalize_service_name(name)
        services.append(ServiceCost(service=name, display_name=display, drilldown_key=key, cost=amount, currency=unit))
    if not any(s.drilldown_key == "eip" for s in services):
        # Elastic IPs are billed under EC2; keep a drill-down entry regardless.
        services.append(
            ServiceCost(
                service="Elastic IPs", display_name="Elastic IPs", drilldown_key="eip", cost=0.0, currency=DEFAULT_CURRENCY
            )
        )
    return services


def _cost_and_usage_args(rng: DateRange, group_key: str) -> List[str]:
    return [
        "ce",
        "get-cost-and-usage",
        "--time-period",
        f"Start={rng.ce_start},End={rng.ce_end}",
        "--granularity",
        "MONTHLY",
        "--metrics",
        COST_METRIC,
        "--group-by",
        f"Type=DIMENSION,Key={group_key}",
    ]


def _first_result(payload: Dict[str, Any], what: str) -> Dict[str, Any]:
    results = payload.get("ResultsByTime") or []
    if not results:
        raise OutputParseError(f"no cost data returned from cost explorer{what}")
    return results[0]


def _is_cost_explorer_disabled(exc: CommandError) -> bool:
    lowered = str(exc).lower()
    return "cost explorer" in lowered and "enable" in lowered


class CostService:
    """Cost Explorer totals and per-service costs, cached per profile and range."""

    def __init__(
        self,
        executor: Executor,
        cache: TTLCache[CostSnapshot],
        profiles: Optional[ActiveProfile] = None,
        *,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        self._executor = executor
        self._cache = cache
        self._profiles = profiles
        self._today = today

    def get_cost_overview(
        self, start: str = "", end: str = "", cancel: Optional[CancelToken] = None
    ) -> CostOverview:
        return self._get_or_fetch(start, end, cancel).overview

    def get_service_costs(
        self, start: str = "", end: str = "", cancel: Optional[CancelToken] = None
    ) -> List[ServiceCost]:
        return self._get_or_fetch(start, end, cancel).services

    def _get_or_fetch(self, start: str, end: str, cancel: Optional[CancelToken]) -> CostSnapshot:
        active = "system"
        if self._profiles is not None:
            active = self._profiles.active_id() or "system"
        today = self._today() if self._today is not None else None
        rng = normalize_date_range(start, end, today)
        key = f"cost-and-services:{active}:{rng.ce_start}:{rng.ce_end}"
        cached, found = self._cache.get(key)
        if found:
            return cached
        snapshot = self.fetch(rng, cancel)
        self._cache.set(key, snapshot)
        return snapshot

    def fetch(self, rng: DateRange, cancel: Optional[CancelToken] = None) -> CostSnapshot:
        try:
            out = self._executor.run_json(_cost_and_usage_args(rng, "SERVICE"), cancel)
        except CommandError as e:
            if _is_cost_explorer_disabled(e):
                raise CostExplorerDisabledError() from e
            raise
        result = _first_result(decode_json_object(out, "cost explorer"), "")
        services = project_service_costs(result.get("Groups") or [])

        currency = DEFAULT_CURRENCY
        usage = 0.0
        credits = 0.0
        try:
            usage, credits, currency = self._fetch_record_type_totals(rng, cancel)
        except (CommandError, OutputParseError) as e:
            LOG.warning("RECORD_TYPE breakdown unavailable; using overall total", extra={"error": str(e)})
            total = (result.get("Total") or {}).get(COST_METRIC) or {}
            try:
                usage = float(total.get("Amount"))
                currency = total.get("Unit") or currency
            except (TypeError, ValueError):
                pass

        overview = CostOverview(
            total=usage,
            net_total=net_total(usage, credits),
            credits_applied=credits,
            currency=currency,
            start=rng.display_start,
            end=rng.display_end,
        )
        return CostSnapshot(overview=overview, services=services)

    def _fetch_record_type_totals(
        self, rng: DateRange, cancel: Optional[CancelToken]
    ) -> Tuple[float, float, str]:
        out = self._executor.run_json(_cost_and_usage_args(rng, "RECORD_TYPE"), cancel)
        result = _first_result(decode_json_object(out, "cost explorer RECORD_TYPE"), " for RECORD_TYPE breakdown")
        return derive_record_type_totals(result.get("Groups") or [])
