"""AWS provider: sessions, resource listers, instances, DNS and storage."""

import configparser
import json
import os
from datetime import datetime, timezone
from typing import BinaryIO, Callable, NamedTuple
from urllib.parse import quote

import boto3
from botocore.exceptions import ClientError
from dotenv import load_dotenv

from .errors import AuthError, NotFoundError, ValidationError
from .machine import (
    DEBIAN_AMI_OWNER,
    DEFAULT_DISK_SIZE_GB,
    DEFAULT_MACHINE,
    DEFAULT_OS_IMAGE,
    MachineType,
    is_arm,
    network_interface,
    root_disk,
)
from .paginate import THROTTLE_SECONDS, PageRequest, PagesResponse, Paginator
from .records import UpdateRequest, to_record_sets
from .types import DNSChange, ObjectInfo
from .utils import ensure_trailing_dot, log, logger

DEFAULT_REGION = "ap-southeast-2"

LISTED_INSTANCE_STATES = ["pending", "running", "stopping", "stopped"]


def parse_filters(filter: str | None) -> list[dict]:
    """Parse 'name=v1,v2;name2=v3' into EC2 Filters.

    :param filter: Filter expression, e.g. 'instance-state-name=running;tag:Name=web'
    :return: List of {'Name': ..., 'Values': [...]} dicts
    :raises ValidationError: If a clause has no '=' or no name
    """
    filters = []
    if not filter:
        return filters
    for clause in filter.split(";"):
        clause = clause.strip()
        if not clause:
            continue
        name, sep, values = clause.partition("=")
        if not sep or not name.strip():
            raise ValidationError(
                f"Invalid filter: '{clause}' (expected name=value[,value...])"
            )
        filters.append(
            {
                "Name": name.strip(),
                "Values": [v.strip() for v in values.split(",") if v.strip()],
            }
        )
    return filters


def order_items(items: list[dict], order_by: str | None) -> list[dict]:
    """Sort items by a top-level key, 'Key' or 'Key desc'."""
    if not order_by:
        return items
    key, _, direction = order_by.strip().partition(" ")
    reverse = direction.strip().lower() == "desc"
    return sorted(items, key=lambda item: str(item.get(key, "")), reverse=reverse)


class ZoneLister:
    """Availability zones of one region.

    DescribeAvailabilityZones is not paginated, so the whole region comes
    back as a single page.
    """

    def __init__(self, ec2) -> None:
        self.ec2 = ec2

    def fetch_page(
        self, token: str, page_size: int, filter: str | None, order_by: str | None
    ) -> tuple[list, str]:
        params = {}
        filters = parse_filters(filter)
        if filters:
            params["Filters"] = filters
        response = self.ec2.describe_availability_zones(**params)
        return order_items(response["AvailabilityZones"], order_by), ""


class InstanceLister:
    """EC2 instances in one availability zone."""

    def __init__(self, ec2, zone: str) -> None:
        self.ec2 = ec2
        self.zone = zone

    def fetch_page(
        self, token: str, page_size: int, filter: str | None, order_by: str | None
    ) -> tuple[list, str]:
        # DescribeInstances accepts 5-1000
        max_results = min(max(page_size, 5), 1000)
        if max_results != page_size:
            logger.debug(f"InstanceLister: page size {page_size} adjusted to {max_results}")
        params = {
            "Filters": [
                {"Name": "availability-zone", "Values": [self.zone]},
                *parse_filters(filter),
            ],
            "MaxResults": max_results,
        }
        if token:
            params["NextToken"] = token
        response = self.ec2.describe_instances(**params)
        instances = [
            instance
            for reservation in response["Reservations"]
            for instance in reservation["Instances"]
        ]
        return order_items(instances, order_by), response.get("NextToken") or ""


class RecordSetLister:
    """Route 53 record sets of one hosted zone.

    Route 53 resumes listings from a (name, type, identifier) triple rather
    than a token, so the triple is packed into a JSON string.
    """

    def __init__(self, route53, hosted_zone: str, domain_name: str = "") -> None:
        self.route53 = route53
        self.hosted_zone = hosted_zone
        self.domain_name = ensure_trailing_dot(domain_name.lower()) if domain_name else ""

    def fetch_page(
        self, token: str, page_size: int, filter: str | None, order_by: str | None
    ) -> tuple[list, str]:
        params = {"HostedZoneId": self.hosted_zone, "MaxItems": str(page_size)}
        if token:
            start = json.loads(token)
            params["StartRecordName"] = start["name"]
            params["StartRecordType"] = start["type"]
            if start.get("identifier"):
                params["StartRecordIdentifier"] = start["identifier"]
        elif self.domain_name:
            params["StartRecordName"] = self.domain_name

        response = self.route53.list_resource_record_sets(**params)
        record_sets = response["ResourceRecordSets"]

        next_token = ""
        if response.get("IsTruncated"):
            next_token = json.dumps(
                {
                    "name": response["NextRecordName"],
                    "type": response["NextRecordType"],
                    "identifier": response.get("NextRecordIdentifier", ""),
                }
            )

        if self.domain_name:
            matching = [r for r in record_sets if r["Name"] == self.domain_name]
            if len(matching) < len(record_sets):
                # Listing has moved past the requested name
                next_token = ""
            record_sets = matching

        return record_sets, next_token


class ZoneRequest(NamedTuple):
    region: str = ""
    order_by: str | None = None
    filter: str | None = None
    max_pages: int = 0
    results_per_page: int = 0

    def validate(self) -> None:
        if not self.region.strip():
            raise ValidationError("expecting a non-blank region")
        parse_filters(self.filter)

    def page_request(self) -> PageRequest:
        return PageRequest(
            self.order_by, self.filter, self.max_pages, self.results_per_page
        )


class InstancesRequest(NamedTuple):
    region: str = ""
    zone: str = ""
    order_by: str | None = None
    filter: str | None = None
    max_pages: int = 0
    results_per_page: int = 0

    def validate(self) -> None:
        if not self.zone.strip():
            raise ValidationError("expecting a non-blank zone")
        if not self.region.strip():
            raise ValidationError("expecting a non-blank region")
        parse_filters(self.filter)

    def page_request(self) -> PageRequest:
        return PageRequest(
            self.order_by, self.filter, self.max_pages, self.results_per_page
        )


class RecordSetRequest(NamedTuple):
    """List record sets of a hosted zone.

    :param domain_name: If set, only record sets with exactly this name are listed
    """

    hosted_zone: str = ""
    domain_name: str = ""
    max_pages: int = 0
    results_per_page: int = 0

    def validate(self) -> None:
        if not self.hosted_zone.strip():
            raise ValidationError("expecting a non-empty hosted zone")

    def page_request(self) -> PageRequest:
        return PageRequest(
            max_pages=self.max_pages, results_per_page=self.results_per_page
        )


class InstanceRequest(NamedTuple):
    """Look up or create a named instance in one availability zone.

    :param can_forward_ip: Disable the source/destination check so the
        instance can forward packets it neither sent nor receives
    :param user_data: Cloud-init script or data passed to the instance
    :param iam_instance_profile: Instance profile name to attach
    :param block_until_completion: Wait for the instance to reach 'running'
    """

    region: str = ""
    zone: str = ""
    name: str = ""
    description: str = ""
    machine_type: MachineType | None = None
    can_forward_ip: bool = False
    disk_size_gb: int = DEFAULT_DISK_SIZE_GB
    public_ip: bool = True
    user_data: str = ""
    iam_instance_profile: str | None = None
    block_until_completion: bool = False

    def validate_basic(self) -> None:
        if not self.region.strip():
            raise ValidationError("expecting a non-empty region")
        if not self.zone.strip():
            raise ValidationError("expecting a non-empty zone")
        if not self.name.strip():
            raise ValidationError("expecting a non-blank name")

    def validate_for_create(self) -> None:
        self.validate_basic()
        if self.disk_size_gb <= 0:
            raise ValidationError("expecting a positive disk size")
        self.machine_type_or_default().validate()

    def machine_type_or_default(self) -> MachineType:
        return self.machine_type or DEFAULT_MACHINE


class UploadParams(NamedTuple):
    """Object upload.

    :param reader: Called once to open the data to upload
    :param public: Make the object publicly readable
    """

    bucket: str = ""
    name: str = ""
    reader: Callable[[], BinaryIO] | None = None
    public: bool = False
    content_type: str = "application/octet-stream"

    def validate(self) -> None:
        if self.reader is None:
            raise ValidationError("expecting a non-blank reader function")
        if not self.name:
            raise ValidationError("expecting a non-empty name")
        if not self.bucket:
            raise ValidationError("expecting a non-empty bucket")


class BucketCheck(NamedTuple):
    bucket: str
    public: bool = False


def object_url(obj: ObjectInfo) -> str:
    return f"https://{obj['bucket']}.s3.amazonaws.com/{quote(obj['name'])}"


def throttle_from_env() -> float:
    """Throttle interval in seconds, from DEPLOYINFRA_THROTTLE_MS if set."""
    load_dotenv()
    value = os.getenv("DEPLOYINFRA_THROTTLE_MS")
    if not value:
        return THROTTLE_SECONDS
    try:
        millis = int(value)
    except ValueError:
        raise ValidationError(
            f"DEPLOYINFRA_THROTTLE_MS must be an integer, got '{value}'"
        ) from None
    if millis < 0:
        raise ValidationError("DEPLOYINFRA_THROTTLE_MS must not be negative")
    return millis / 1000


class AWSProvider:
    REGIONS = [
        "us-east-1",
        "us-east-2",
        "us-west-1",
        "us-west-2",
        "ca-central-1",
        "eu-west-1",
        "eu-west-2",
        "eu-west-3",
        "eu-central-1",
        "eu-north-1",
        "ap-southeast-1",
        "ap-southeast-2",
        "ap-northeast-1",
        "ap-northeast-2",
        "ap-south-1",
        "sa-east-1",
    ]

    def __init__(
        self,
        region: str | None = None,
        aws_profile: str | None = None,
        paginator: Paginator | None = None,
    ):
        self.aws_config = AWSProvider.get_aws_config(profile=aws_profile)
        region = region or self.aws_config.get("region_name", DEFAULT_REGION)

        # Accept an availability zone (us-east-1a) where a region is expected
        if region[-1].isalpha() and region[:-1] in self.REGIONS:
            log(f"Converted availability zone '{region}' to region '{region[:-1]}'")
            region = region[:-1]
        elif region not in self.REGIONS:
            raise ValidationError(
                f"Invalid AWS region: '{region}'\n"
                f"Valid AWS regions: '{', '.join(self.REGIONS[:6])}', ..."
            )

        self.region = region
        self.aws_config["region_name"] = region
        self.paginator = paginator or Paginator(throttle=throttle_from_env())

    @staticmethod
    def get_aws_config(profile: str | None = None) -> dict:
        """Load AWS configuration for boto3 session initialization.

        Reads profile and region from config files and environment variables.
        Does not validate credentials, call validate_auth() for that.

        :param profile: Explicit AWS profile name (overrides AWS_PROFILE env var)
        :return: Dict with profile_name and/or region_name keys for boto3.Session()
        """
        load_dotenv()

        available_profiles = set()
        for path in ["~/.aws/credentials", "~/.aws/config"]:
            path = os.path.expanduser(path)
            if not os.path.exists(path):
                continue
            cfg = configparser.ConfigParser()
            cfg.read(path)
            for section in cfg.sections():
                available_profiles.add(section.removeprefix("profile "))

        aws_config = {}
        profile_name = profile or os.getenv("AWS_PROFILE")
        if not profile_name and "default" in available_profiles:
            profile_name = "default"
        if profile_name:
            if profile_name in available_profiles:
                aws_config["profile_name"] = profile_name
            else:
                log(f"AWS profile '{profile_name}' not found, using default credential chain...")
                os.environ.pop("AWS_PROFILE", None)

        region = os.getenv("AWS_REGION")
        if region:
            aws_config["region_name"] = region

        return aws_config

    def _get_session(self):
        return boto3.Session(**self.aws_config)

    def _client(self, service: str, region: str | None = None):
        return self._get_session().client(service, region_name=region or self.region)

    def validate_auth(self) -> None:
        """Fail fast if credentials are missing, expired or invalid.

        :raises AuthError: If STS rejects the credentials
        """
        profile = self.aws_config.get("profile_name")
        try:
            identity = self._client("sts").get_caller_identity()
        except ClientError as e:
            code = e.response["Error"]["Code"]
            if code in ("ExpiredToken", "ExpiredTokenException"):
                login_cmd = f"aws sso login --profile {profile}" if profile else "aws sso login"
                raise AuthError(f"AWS credentials expired. Run:\n  {login_cmd}") from e
            raise AuthError(f"AWS authentication failed ({code}): {e}") from e
        except Exception as e:
            raise AuthError(f"AWS authentication failed: {e}") from e
        log(
            f"AWS: region={self.region}  profile={profile or 'default chain'}"
            f"  account={identity.get('Account', 'unknown')}"
        )

    def list_zones(self, req: ZoneRequest) -> PagesResponse:
        req.validate()
        lister = ZoneLister(self._client("ec2", req.region))
        return self.paginator.start(req.page_request(), lister)

    def list_instances(self, req: InstancesRequest) -> PagesResponse:
        req.validate()
        lister = InstanceLister(self._client("ec2", req.region), req.zone)
        return self.paginator.start(req.page_request(), lister)

    def list_dns_record_sets(self, req: RecordSetRequest) -> PagesResponse:
        req.validate()
        lister = RecordSetLister(
            self._client("route53"), req.hosted_zone, req.domain_name
        )
        return self.paginator.start(req.page_request(), lister)

    def find_instance(self, req: InstanceRequest) -> dict:
        """Find a live instance by Name tag in the request's zone.

        :return: EC2 instance description
        :raises NotFoundError: If no pending/running/stopped instance has the name
        """
        req.validate_basic()
        ec2 = self._client("ec2", req.region)
        response = ec2.describe_instances(
            Filters=[
                {"Name": "tag:Name", "Values": [req.name]},
                {"Name": "availability-zone", "Values": [req.zone]},
                {"Name": "instance-state-name", "Values": LISTED_INSTANCE_STATES},
            ]
        )
        for reservation in response["Reservations"]:
            for instance in reservation["Instances"]:
                return instance
        raise NotFoundError(f"Instance '{req.name}' not found in '{req.zone}'")

    def _find_ami(self, ec2, instance_type: str) -> str:
        arch = "arm64" if is_arm(instance_type) else "amd64"
        response = ec2.describe_images(
            Filters=[
                {"Name": "name", "Values": [DEFAULT_OS_IMAGE.format(arch=arch)]},
                {"Name": "state", "Values": ["available"]},
                {
                    "Name": "architecture",
                    "Values": ["arm64" if arch == "arm64" else "x86_64"],
                },
            ],
            Owners=[DEBIAN_AMI_OWNER],
        )
        if not response["Images"]:
            raise NotFoundError(f"No Debian AMI found for '{arch}'")
        images = sorted(response["Images"], key=lambda x: x["CreationDate"], reverse=True)
        return images[0]["ImageId"]

    def create_instance(self, req: InstanceRequest) -> dict:
        """Create an instance and return its description.

        :raises ValidationError: If the request or its machine type is invalid
        """
        req.validate_for_create()
        instance_type = req.machine_type_or_default().instance_type()
        ec2 = self._client("ec2", req.region)

        ami_id = self._find_ami(ec2, instance_type)
        log(f"Using AMI: '{ami_id}'")

        tags = [
            {"Key": "Name", "Value": req.name},
            {"Key": "ManagedBy", "Value": "deployinfra"},
            {"Key": "CreatedAt", "Value": datetime.now(timezone.utc).isoformat()},
        ]
        if req.description:
            tags.append({"Key": "Description", "Value": req.description})

        run_params = {
            "ImageId": ami_id,
            "InstanceType": instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "Placement": {"AvailabilityZone": req.zone},
            "BlockDeviceMappings": root_disk(req.disk_size_gb),
            "NetworkInterfaces": [network_interface(req.public_ip)],
            "TagSpecifications": [{"ResourceType": "instance", "Tags": tags}],
        }
        if req.user_data:
            run_params["UserData"] = req.user_data
        if req.iam_instance_profile:
            run_params["IamInstanceProfile"] = {"Name": req.iam_instance_profile}

        log(f"Creating EC2 instance '{req.name}' ({instance_type}) in '{req.zone}'...")
        response = ec2.run_instances(**run_params)
        instance_id = response["Instances"][0]["InstanceId"]

        if req.can_forward_ip:
            ec2.modify_instance_attribute(
                InstanceId=instance_id, SourceDestCheck={"Value": False}
            )

        if req.block_until_completion:
            log("Waiting for instance to start...")
            ec2.get_waiter("instance_running").wait(InstanceIds=[instance_id])

        # RunInstances only describes the instance as submitted
        return self.find_instance(req)

    def find_hosted_zone(self, domain: str) -> str:
        """Find the hosted zone serving domain, trying parent domains in turn.

        :return: Hosted zone ID
        :raises NotFoundError: If no hosted zone matches
        """
        route53 = self._client("route53")
        labels = domain.strip(".").lower().split(".")
        for i in range(len(labels) - 1):
            candidate = ensure_trailing_dot(".".join(labels[i:]))
            response = route53.list_hosted_zones_by_name(DNSName=candidate, MaxItems="1")
            for zone in response["HostedZones"]:
                if zone["Name"] == candidate:
                    return zone["Id"]
        raise NotFoundError(f"No Route53 hosted zone found for '{domain}'")

    def update_record_sets(self, req: UpdateRequest) -> DNSChange:
        """Submit additions and deletions as one Route 53 change batch.

        :raises ValidationError: If the request or any record is invalid
        """
        req.validate()
        deletions = to_record_sets(*req.deletions)
        additions = to_record_sets(*req.additions)
        if not (additions or deletions):
            raise ValidationError("expecting at least one record to add or delete")

        changes = [{"Action": "DELETE", "ResourceRecordSet": r} for r in deletions]
        changes += [{"Action": "CREATE", "ResourceRecordSet": r} for r in additions]

        log(
            f"Updating hosted zone '{req.hosted_zone}': "
            f"{len(additions)} addition(s), {len(deletions)} deletion(s)"
        )
        response = self._client("route53").change_resource_record_sets(
            HostedZoneId=req.hosted_zone,
            ChangeBatch={"Comment": "deployinfra", "Changes": changes},
        )
        info = response["ChangeInfo"]
        return {
            "id": info["Id"],
            "status": info["Status"],
            "additions": additions,
            "deletions": deletions,
        }

    def add_record_sets(self, req: UpdateRequest) -> DNSChange:
        return self.update_record_sets(
            UpdateRequest(hosted_zone=req.hosted_zone, additions=tuple(req.records))
        )

    def delete_record_sets(self, req: UpdateRequest) -> DNSChange:
        return self.update_record_sets(
            UpdateRequest(hosted_zone=req.hosted_zone, deletions=tuple(req.records))
        )

    def ensure_bucket_exists(self, check: BucketCheck) -> str:
        """Create the bucket unless it already exists.

        Public buckets allow object ACLs so uploads can be made public-read.

        :return: Bucket name
        """
        s3 = self._client("s3")
        try:
            s3.head_bucket(Bucket=check.bucket)
            return check.bucket
        except ClientError as e:
            if e.response["Error"]["Code"] not in ("404", "NoSuchBucket", "NotFound"):
                raise

        log(f"Creating bucket '{check.bucket}' in '{self.region}'...")
        params = {"Bucket": check.bucket}
        # us-east-1 rejects an explicit location constraint
        if self.region != "us-east-1":
            params["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
        if check.public:
            params["ObjectOwnership"] = "ObjectWriter"
        s3.create_bucket(**params)
        if check.public:
            s3.delete_public_access_block(Bucket=check.bucket)
        return check.bucket

    def upload_with_params(self, params: UploadParams) -> ObjectInfo:
        params.validate()
        bucket = self.ensure_bucket_exists(BucketCheck(params.bucket, params.public))
        s3 = self._client("s3")

        extra_args = {"ContentType": params.content_type}
        if params.public:
            extra_args["ACL"] = "public-read"

        log(f"Uploading '{params.name}' to bucket '{bucket}'...")
        with params.reader() as f:
            s3.upload_fileobj(f, bucket, params.name, ExtraArgs=extra_args)
        head = s3.head_object(Bucket=bucket, Key=params.name)
        return {"bucket": bucket, "name": params.name, "size": head["ContentLength"]}

    def download(self, bucket: str, name: str):
        """Open an object for reading.

        :return: Streaming body; close it when done
        :raises NotFoundError: If the object does not exist
        """
        try:
            response = self._client("s3").get_object(Bucket=bucket, Key=name)
        except ClientError as e:
            if e.response["Error"]["Code"] in ("NoSuchKey", "NoSuchBucket", "404"):
                raise NotFoundError(f"Object '{name}' not found in '{bucket}'") from e
            raise
        return response["Body"]
