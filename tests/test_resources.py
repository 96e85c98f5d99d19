from __future__ import annotations

import json
import threading
from typing import Dict, List, Optional, Sequence

import pytest

from aws_dashboard.awscli.aggregator import RegionAggregator
from aws_dashboard.awscli.regions import list_regions
from aws_dashboard.awscli.resources import (
    CachedResourceService,
    ResourceService,
    default_registry,
    project_ec2_instances,
    project_rekognition_collections,
    project_s3_buckets,
    summarize_resources,
)
from aws_dashboard.cache import TTLCache
from aws_dashboard.models import ServiceResources
from aws_dashboard.util.concurrency import CancelToken
from aws_dashboard.util.errors import CommandError


class RecordingExecutor:
    def __init__(self, responses: Dict[str, bytes]) -> None:
        self.responses = responses
        self.calls: List[List[str]] = []
        self._lock = threading.Lock()

    def run_json(self, args: Sequence[str], cancel: Optional[CancelToken] = None) -> bytes:
        with self._lock:
            self.calls.append(list(args))
        return self.responses.get(args[1], b"{}")


def test_list_regions_skips_not_opted_in() -> None:
    payload = {
        "Regions": [
            {"RegionName": "us-east-1", "OptInStatus": "opt-in-not-required"},
            {"RegionName": "af-south-1", "OptInStatus": "not-opted-in"},
            {"RegionName": "ap-east-1", "OptInStatus": "opted-in"},
            {"RegionName": ""},
        ]
    }
    executor = RecordingExecutor({"describe-regions": json.dumps(payload).encode()})

    assert list_regions(executor) == ["us-east-1", "ap-east-1"]
    assert executor.calls == [["ec2", "describe-regions", "--all-regions"]]


def test_project_ec2_instances_reads_name_tag_and_az_region() -> None:
    payload = {
        "Reservations": [
            {
                "Instances": [
                    {
                        "InstanceId": "i-1",
                        "State": {"Name": "running"},
                        "InstanceType": "t3.small",
                        "Placement": {"AvailabilityZone": "eu-west-1b"},
                        "PrivateIpAddress": "10.0.0.5",
                        "Tags": [{"Key": "env", "Value": "dev"}, {"Key": "Name", "Value": "web"}],
                    }
                ]
            }
        ]
    }

    (inst,) = project_ec2_instances(payload, "")

    assert inst.name == "web"
    assert inst.region == "eu-west-1"
    assert inst.public_ip == ""


def test_project_rekognition_pairs_model_versions() -> None:
    records = project_rekognition_collections(
        {"CollectionIds": ["faces", "pets"], "FaceModelVersions": ["6.0"]}, "us-east-1"
    )

    assert [(r.collection_id, r.face_model_version) for r in records] == [("faces", "6.0"), ("pets", "")]


def test_project_s3_buckets_have_no_region() -> None:
    records = project_s3_buckets({"Buckets": [{"Name": "logs", "CreationDate": "2023-01-01T00:00:00Z"}]}, "us-east-1")

    assert records[0].region == ""


def test_registry_aliases_are_case_insensitive() -> None:
    registry = default_registry()

    for alias in ("eip", "ElasticIP", "elastic-ips"):
        assert registry.get(alias).key == "eip"
    assert registry.get("lambda") is None
    assert [k.key for k in registry.kinds()] == ["ec2", "vpc", "eip", "s3", "rekognition", "rds"]


def test_unknown_service_returns_message() -> None:
    executor = RecordingExecutor({})
    service = ResourceService(executor, RegionAggregator(executor))

    res = service.get_resources("lambda", "all")

    assert res.message == 'Resource drilldown not implemented for service "lambda"'
    assert executor.calls == []
    assert res.to_dict() == {"service": "lambda", "message": res.message}


def test_s3_ignores_region_selector() -> None:
    executor = RecordingExecutor({"list-buckets": json.dumps({"Buckets": [{"Name": "b"}]}).encode()})
    service = ResourceService(executor, RegionAggregator(executor))

    res = service.get_resources("s3", "all")

    assert [b.name for b in res.s3_buckets] == ["b"]
    assert executor.calls == [["s3api", "list-buckets"]]


def test_default_region_omits_region_flag() -> None:
    executor = RecordingExecutor({"describe-addresses": json.dumps({"Addresses": [{"PublicIp": "1.2.3.4"}]}).encode()})
    service = ResourceService(executor, RegionAggregator(executor))

    res = service.get_resources("elastic-ips", "")

    assert res.service == "eip"
    assert res.elastic_ips[0].public_ip == "1.2.3.4"
    assert executor.calls == [["ec2", "describe-addresses"]]
    assert res.to_dict()["elasticIps"][0]["publicIp"] == "1.2.3.4"


class CountingLookup:
    def __init__(self, fail: Optional[str] = None) -> None:
        self.fail = fail
        self.calls: List[tuple] = []

    def get_resources(self, service: str, region: str = "", cancel: Optional[CancelToken] = None) -> ServiceResources:
        self.calls.append((service, region))
        if service == self.fail:
            raise CommandError("aws cli error: boom")
        return ServiceResources(service=service, vpcs=[object()] * 2 if service == "vpc" else [])


class FixedProfile:
    def __init__(self, active: str) -> None:
        self.active = active

    def active_id(self) -> str:
        return self.active


def test_cached_service_keys_by_profile_service_and_region() -> None:
    inner = CountingLookup()
    profile = FixedProfile("system")
    cached = CachedResourceService(inner, TTLCache(60), profile)

    cached.get_resources("VPC", "ALL")
    cached.get_resources("vpc", "all")
    assert inner.calls == [("VPC", "ALL")]

    profile.active = "2"
    cached.get_resources("vpc", "all")
    cached.get_resources("vpc", "us-east-1")
    assert len(inner.calls) == 3


def test_cached_service_does_not_cache_errors() -> None:
    inner = CountingLookup(fail="ec2")
    cached = CachedResourceService(inner, TTLCache(60))

    for _ in range(2):
        with pytest.raises(CommandError):
            cached.get_resources("ec2", "all")
    assert len(inner.calls) == 2


def test_summary_skips_failing_kinds_and_keeps_registry_order() -> None:
    lookup = CountingLookup(fail="s3")

    summaries = summarize_resources(lookup, default_registry())

    assert [s.service for s in summaries] == ["ec2", "vpc", "eip", "rekognition", "rds"]
    vpc = next(s for s in summaries if s.service == "vpc")
    assert (vpc.count, vpc.resource_type, vpc.display_name) == (2, "vpcs", "VPC")
    assert all(region == "all" for _, region in lookup.calls)
