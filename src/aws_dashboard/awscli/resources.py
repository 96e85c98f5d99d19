from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from ..cache import TTLCache
from ..logging import get_logger
from ..models import (
    VPC,
    EC2Instance,
    ElasticIP,
    RDSInstance,
    RekognitionCollection,
    ResourceSummary,
    S3Bucket,
    ServiceResources,
)
from ..util.concurrency import CancelToken, iter_completed
from .aggregator import RegionAggregator, is_all_regions
from .executor import Executor, decode_json_object

LOG = get_logger(__name__)

Payload = Dict[str, Any]
Projection = Callable[[Payload, str], List[Any]]


class ActiveProfile(Protocol):
    def active_id(self) -> str:
        ...


class ResourceLookup(Protocol):
    def get_resources(
        self, service: str, region: str = "", cancel: Optional[CancelToken] = None
    ) -> ServiceResources:
        ...


@dataclass(frozen=True)
class ResourceKind:
    """
    One drill-down resource type: the CLI operation that lists it, the
    projection from raw output to records, and the ServiceResources field
    the records land in.
    """

    key: str
    display_name: str
    field_name: str
    resource_type: str
    operation: Tuple[str, ...]
    project: Projection
    regional: bool = True
    aliases: Tuple[str, ...] = ()

    def command(self, region: str) -> List[str]:
        args = list(self.operation)
        if self.regional and region:
            args.extend(["--region", region])
        return args

    def build(self, records: Sequence[Any], message: str = "") -> ServiceResources:
        res = ServiceResources(service=self.key, message=message)
        setattr(res, self.field_name, list(records))
        return res

    def count(self, res: ServiceResources) -> int:
        return len(getattr(res, self.field_name))


class ResourceKindRegistry:
    """
    Registry of resource kinds keyed by service name and aliases
    (case-insensitive). Iteration follows registration order.
    """

    def __init__(self) -> None:
        self._kinds: Dict[str, ResourceKind] = {}
        self._lookup: Dict[str, str] = {}

    def register(self, kind: ResourceKind) -> None:
        self._kinds[kind.key] = kind
        for name in (kind.key, *kind.aliases):
            self._lookup[name.lower()] = kind.key

    def get(self, service: str) -> Optional[ResourceKind]:
        key = self._lookup.get((service or "").strip().lower())
        return self._kinds.get(key) if key else None

    def kinds(self) -> List[ResourceKind]:
        return list(self._kinds.values())


def _tag_name(tags: Optional[Sequence[Dict[str, Any]]]) -> str:
    for tag in tags or []:
        if tag.get("Key") == "Name":
            return str(tag.get("Value") or "")
    return ""


def _region_from_az(az: str) -> str:
    # us-east-1a -> us-east-1
    if len(az) > 1:
        return az[:-1]
    return ""


def project_ec2_instances(payload: Payload, region: str) -> List[EC2Instance]:
    instances: List[EC2Instance] = []
    for reservation in payload.get("Reservations") or []:
        for inst in reservation.get("Instances") or []:
            az = (inst.get("Placement") or {}).get("AvailabilityZone") or ""
            instances.append(
                EC2Instance(
                    instance_id=inst.get("InstanceId") or "",
                    name=_tag_name(inst.get("Tags")),
                    state=(inst.get("State") or {}).get("Name") or "",
                    instance_type=inst.get("InstanceType") or "",
                    availability_zone=az,
                    private_ip=inst.get("PrivateIpAddress") or "",
                    public_ip=inst.get("PublicIpAddress") or "",
                    region=region or _region_from_az(az),
                )
            )
    return instances


def project_vpcs(payload: Payload, region: str) -> List[VPC]:
    return [
        VPC(
            vpc_id=v.get("VpcId") or "",
            name=_tag_name(v.get("Tags")),
            cidr_block=v.get("CidrBlock") or "",
            state=v.get("State") or "",
            is_default=bool(v.get("IsDefault")),
            region=region,
        )
        for v in payload.get("Vpcs") or []
    ]


def project_elastic_ips(payload: Payload, region: str) -> List[ElasticIP]:
    return [
        ElasticIP(
            allocation_id=a.get("AllocationId") or "",
            public_ip=a.get("PublicIp") or "",
            association_id=a.get("AssociationId") or "",
            instance_id=a.get("InstanceId") or "",
            network_interface_id=a.get("NetworkInterfaceId") or "",
            domain=a.get("Domain") or "",
            region=region,
        )
        for a in payload.get("Addresses") or []
    ]


def project_s3_buckets(payload: Payload, region: str) -> List[S3Bucket]:
    # Bucket regions are not resolved; list-buckets is account-wide.
    return [
        S3Bucket(name=b.get("Name") or "", creation_date=b.get("CreationDate") or "", region="")
        for b in payload.get("Buckets") or []
    ]


def project_rds_instances(payload: Payload, region: str) -> List[RDSInstance]:
    return [
        RDSInstance(
            db_instance_identifier=db.get("DBInstanceIdentifier") or "",
            engine=db.get("Engine") or "",
            status=db.get("DBInstanceStatus") or "",
            db_instance_class=db.get("DBInstanceClass") or "",
            availability_zone=db.get("AvailabilityZone") or "",
            endpoint=(db.get("Endpoint") or {}).get("Address") or "",
            region=region,
        )
        for db in payload.get("DBInstances") or []
    ]


def project_rekognition_collections(payload: Payload, region: str) -> List[RekognitionCollection]:
    ids = payload.get("CollectionIds") or []
    versions = payload.get("FaceModelVersions") or []
    return [
        RekognitionCollection(
            collection_id=cid,
            face_model_version=versions[i] if i < len(versions) else "",
            region=region,
        )
        for i, cid in enumerate(ids)
    ]


def default_registry() -> ResourceKindRegistry:
    registry = ResourceKindRegistry()
    registry.register(
        ResourceKind("ec2", "EC2", "ec2_instances", "ec2Instances", ("ec2", "describe-instances"), project_ec2_instances)
    )
    registry.register(ResourceKind("vpc", "VPC", "vpcs", "vpcs", ("ec2", "describe-vpcs"), project_vpcs))
    registry.register(
        ResourceKind(
            "eip",
            "Elastic IPs",
            "elastic_ips",
            "elasticIps",
            ("ec2", "describe-addresses"),
            project_elastic_ips,
            aliases=("elasticip", "elastic-ips"),
        )
    )
    registry.register(
        ResourceKind(
            "s3", "S3", "s3_buckets", "s3Buckets", ("s3api", "list-buckets"), project_s3_buckets, regional=False
        )
    )
    registry.register(
        ResourceKind(
            "rekognition",
            "Rekognition",
            "rekognition_collections",
            "rekognitionCollections",
            ("rekognition", "list-collections"),
            project_rekognition_collections,
        )
    )
    registry.register(
        ResourceKind(
            "rds", "RDS", "rds_instances", "rdsInstances", ("rds", "describe-db-instances"), project_rds_instances
        )
    )
    return registry


class ResourceService:
    """
    Resource listings backed by the aws CLI.

    `region` is a concrete region, empty for the CLI's default region, or
    "all" to aggregate across every usable region. Region-less kinds (S3)
    ignore it.
    """

    def __init__(
        self,
        executor: Executor,
        aggregator: RegionAggregator,
        registry: Optional[ResourceKindRegistry] = None,
    ) -> None:
        self._executor = executor
        self._aggregator = aggregator
        self._registry = registry or default_registry()

    @property
    def registry(self) -> ResourceKindRegistry:
        return self._registry

    def fetch_region(self, kind: ResourceKind, region: str, cancel: Optional[CancelToken] = None) -> List[Any]:
        out = self._executor.run_json(kind.command(region), cancel)
        payload = decode_json_object(out, kind.operation[-1])
        return kind.project(payload, region)

    def get_resources(
        self, service: str, region: str = "", cancel: Optional[CancelToken] = None
    ) -> ServiceResources:
        kind = self._registry.get(service)
        if kind is None:
            return ServiceResources(
                service=service,
                message=f'Resource drilldown not implemented for service "{service}"',
            )

        if kind.regional and is_all_regions(region):
            outcome = self._aggregator.aggregate(
                lambda rgn, token: self.fetch_region(kind, rgn, token),
                cancel,
                label=kind.key,
            )
            return kind.build(outcome.records, outcome.message)

        target = "" if not kind.regional else region
        return kind.build(self.fetch_region(kind, target, cancel))


class CachedResourceService:
    """
    Memoizes ResourceService results per (active profile, service, region)
    for the cache's TTL. Failures are not cached.
    """

    def __init__(
        self,
        inner: ResourceLookup,
        cache: TTLCache[ServiceResources],
        profiles: Optional[ActiveProfile] = None,
    ) -> None:
        self._inner = inner
        self._cache = cache
        self._profiles = profiles

    def _key(self, service: str, region: str) -> str:
        active = "system"
        if self._profiles is not None:
            active = self._profiles.active_id() or "system"
        return f"{active}|{service.lower()}|{region.lower()}"

    def get_resources(
        self, service: str, region: str = "", cancel: Optional[CancelToken] = None
    ) -> ServiceResources:
        key = self._key(service, region)
        cached, found = self._cache.get(key)
        if found:
            return cached
        res = self._inner.get_resources(service, region, cancel)
        self._cache.set(key, res)
        return res


def summarize_resources(
    lookup: ResourceLookup,
    registry: ResourceKindRegistry,
    cancel: Optional[CancelToken] = None,
) -> List[ResourceSummary]:
    """
    Count resources across all regions for every registered kind, in parallel.

    A kind whose aggregation fails is logged and left out so one failing
    service does not hide the others.
    """
    kinds = registry.kinds()
    counts: Dict[str, int] = {}
    for kind, res, error in iter_completed(
        lambda k: lookup.get_resources(k.key, "all", cancel), kinds, max_workers=len(kinds) or 1
    ):
        if error is not None:
            LOG.warning("Resource summary failed for service", extra={"service": kind.key, "error": str(error)})
            continue
        counts[kind.key] = kind.count(res)

    return [
        ResourceSummary(
            service=kind.key,
            display_name=kind.display_name,
            resource_type=kind.resource_type,
            count=counts[kind.key],
        )
        for kind in kinds
        if kind.key in counts
    ]
