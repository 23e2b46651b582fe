"""deployinfra - Paginated listing and provisioning of AWS resources."""

from .errors import AuthError, DeployInfraError, NotFoundError, ValidationError
from .frontend import Setup, full_setup
from .machine import MachineType
from .paginate import (
    CancelToken,
    Lister,
    Page,
    PageRequest,
    PagesResponse,
    PageStream,
    Paginator,
)
from .providers import (
    AWSProvider,
    BucketCheck,
    InstanceLister,
    InstanceRequest,
    InstancesRequest,
    RecordSetLister,
    RecordSetRequest,
    UploadParams,
    ZoneLister,
    ZoneRequest,
    object_url,
)
from .records import Record, UpdateRequest
from .types import DNSChange, ObjectInfo, RecordType, SetupResponse
from .utils import log, setup_logging, warn

__all__ = [
    "AWSProvider",
    "AuthError",
    "BucketCheck",
    "CancelToken",
    "DeployInfraError",
    "DNSChange",
    "InstanceLister",
    "InstanceRequest",
    "InstancesRequest",
    "Lister",
    "MachineType",
    "NotFoundError",
    "ObjectInfo",
    "Page",
    "PageRequest",
    "PagesResponse",
    "PageStream",
    "Paginator",
    "Record",
    "RecordSetLister",
    "RecordSetRequest",
    "RecordType",
    "Setup",
    "SetupResponse",
    "UpdateRequest",
    "UploadParams",
    "ValidationError",
    "ZoneLister",
    "ZoneRequest",
    "full_setup",
    "log",
    "object_url",
    "setup_logging",
    "warn",
]
