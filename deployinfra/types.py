"""Type definitions for deployinfra."""

from typing import Literal, TypedDict

RecordType = Literal["A", "AAAA", "CNAME", "CAA", "MX", "NS", "SPF", "SRV", "TXT"]


class ResourceRecordSet(TypedDict, total=False):
    """Route 53 record set as sent to and returned by the API."""

    Name: str
    Type: RecordType
    TTL: int
    ResourceRecords: list[dict]


class DNSChange(TypedDict):
    """Result of submitting a Route 53 change batch."""

    id: str
    status: str
    additions: list[ResourceRecordSet]
    deletions: list[ResourceRecordSet]


class ObjectInfo(TypedDict):
    """Uploaded S3 object."""

    bucket: str
    name: str
    size: int


class SetupResponse(TypedDict):
    """Result of a full front-end setup."""

    bundle_url: str
    domains: list[str]
    dns_additions: list[ResourceRecordSet]
    non_https_redirect_url: str
