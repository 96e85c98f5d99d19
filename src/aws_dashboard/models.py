from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from .util.serialization import to_json_dict

OMITEMPTY = {"omitempty": True}


@dataclass(frozen=True)
class EC2Instance:
    instance_id: str
    name: str
    state: str
    instance_type: str
    availability_zone: str
    private_ip: str
    public_ip: str
    region: str


@dataclass(frozen=True)
class VPC:
    vpc_id: str
    name: str
    cidr_block: str
    state: str
    is_default: bool
    region: str


@dataclass(frozen=True)
class ElasticIP:
    allocation_id: str
    public_ip: str
    association_id: str
    instance_id: str
    network_interface_id: str
    domain: str
    region: str


@dataclass(frozen=True)
class S3Bucket:
    name: str
    creation_date: str
    region: str


@dataclass(frozen=True)
class RDSInstance:
    db_instance_identifier: str
    engine: str
    status: str
    db_instance_class: str
    availability_zone: str
    endpoint: str
    region: str


@dataclass(frozen=True)
class RekognitionCollection:
    collection_id: str
    face_model_version: str
    region: str


@dataclass
class ServiceResources:
    """
    Aggregate result for one resource kind.

    Only the list matching `service` is populated; `message` carries advisory
    text such as the regions skipped during a multi-region aggregation.
    """

    service: str
    ec2_instances: List[EC2Instance] = field(default_factory=list, metadata=OMITEMPTY)
    vpcs: List[VPC] = field(default_factory=list, metadata=OMITEMPTY)
    elastic_ips: List[ElasticIP] = field(default_factory=list, metadata=OMITEMPTY)
    s3_buckets: List[S3Bucket] = field(default_factory=list, metadata=OMITEMPTY)
    rekognition_collections: List[RekognitionCollection] = field(default_factory=list, metadata=OMITEMPTY)
    rds_instances: List[RDSInstance] = field(default_factory=list, metadata=OMITEMPTY)
    message: str = field(default="", metadata=OMITEMPTY)

    def to_dict(self) -> Dict[str, Any]:
        return to_json_dict(self)


@dataclass(frozen=True)
class CostOverview:
    total: float
    net_total: float
    credits_applied: float
    currency: str
    start: str
    end: str


@dataclass(frozen=True)
class ServiceCost:
    service: str
    display_name: str
    cost: float
    currency: str
    drilldown_key: str = field(default="", metadata=OMITEMPTY)


@dataclass(frozen=True)
class ResourceSummary:
    service: str
    display_name: str
    resource_type: str
    count: int
