#!/usr/bin/env python3
"""Provision and query AWS resources for front-end servers.

Prerequisites: AWS credentials (aws configure or AWS_PROFILE), a Route53
hosted zone for DNS commands.

Usage: uv run deployinfra <noun> <verb> [options]

Examples:
    uv run deployinfra zone list --region us-east-1
    uv run deployinfra instance list us-east-1a --max-pages 2
    uv run deployinfra dns list Z0123456789 --domain example.com
    uv run deployinfra setup run example.com --zone us-east-1a --ip 203.0.113.7
"""

import logging
import os
from pathlib import Path

import cyclopts
from botocore.exceptions import BotoCoreError, ClientError
from dotenv import load_dotenv
from rich import print

from .errors import DeployInfraError
from .frontend import Setup, full_setup
from .machine import MachineType
from .paginate import PagesResponse
from .providers import (
    AWSProvider,
    InstanceRequest,
    InstancesRequest,
    RecordSetRequest,
    UploadParams,
    ZoneRequest,
    object_url,
)
from .records import Record, UpdateRequest, check_dns
from .utils import error, log, setup_logging

app = cyclopts.App(
    name="deployinfra", help="Provision and query AWS resources", sort_key=None
)

zone_app = cyclopts.App(name="zone", help="Query availability zones", sort_key=1)
instance_app = cyclopts.App(name="instance", help="Manage EC2 instances", sort_key=2)
dns_app = cyclopts.App(name="dns", help="Manage Route53 records", sort_key=3)
storage_app = cyclopts.App(name="storage", help="Upload and download S3 objects", sort_key=4)
setup_app = cyclopts.App(name="setup", help="One-shot front-end setup", sort_key=5)

app.command(zone_app)
app.command(instance_app)
app.command(dns_app)
app.command(storage_app)
app.command(setup_app)


def _print_rows(headers: list[str], rows: list[list[str]]) -> None:
    widths = [
        max(len(headers[i]), *(len(row[i]) for row in rows)) for i in range(len(headers))
    ]
    print("  " + "  ".join(h.ljust(w) for h, w in zip(headers, widths)))
    print("  " + "  ".join("-" * w for w in widths))
    for row in rows:
        print("  " + "  ".join(cell.ljust(w) for cell, w in zip(row, widths)))


def _drain(response: PagesResponse, headers: list[str], to_row) -> int:
    """Print each page as it arrives.

    :return: Number of items printed
    """
    count = 0
    with response.pages as pages:
        for page in pages:
            if page.error:
                raise page.error
            log(f"Page {page.page_number}: {len(page.items)} item(s)")
            if page.items:
                _print_rows(headers, [to_row(item) for item in page.items])
            count += len(page.items)
    return count


def _tag(item: dict, key: str, default: str = "") -> str:
    return next((t["Value"] for t in item.get("Tags", []) if t["Key"] == key), default)


@zone_app.command(name="list")
def list_zones(
    *,
    region: str | None = None,
    filter: str | None = None,
    order_by: str | None = None,
    max_pages: int = 0,
    results_per_page: int = 0,
    aws_profile: str | None = None,
):
    """List availability zones in a region.

    :param region: AWS region (default: AWS_REGION or ap-southeast-2)
    :param filter: EC2 filters, e.g. 'state=available;zone-type=availability-zone'
    :param order_by: Sort key, e.g. 'ZoneName desc'
    :param max_pages: Stop after this many pages (0 = all)
    :param results_per_page: Page size (0 = 40)
    :param aws_profile: AWS profile name
    """
    p = AWSProvider(region=region, aws_profile=aws_profile)
    response = p.list_zones(
        ZoneRequest(p.region, order_by, filter, max_pages, results_per_page)
    )
    count = _drain(
        response,
        ["ZONE", "ID", "STATE"],
        lambda z: [z["ZoneName"], z.get("ZoneId", ""), z.get("State", "")],
    )
    log(f"{count} zone(s) in '{p.region}'")


@instance_app.command(name="list")
def list_instances(
    zone: str,
    *,
    filter: str | None = None,
    order_by: str | None = None,
    max_pages: int = 0,
    results_per_page: int = 0,
    aws_profile: str | None = None,
):
    """List instances in an availability zone.

    :param zone: Availability zone, e.g. us-east-1a
    :param filter: EC2 filters, e.g. 'instance-state-name=running'
    :param order_by: Sort key, e.g. 'LaunchTime desc'
    :param max_pages: Stop after this many pages (0 = all)
    :param results_per_page: Page size (0 = 40; EC2 raises 1-4 to 5)
    :param aws_profile: AWS profile name
    """
    p = AWSProvider(region=zone, aws_profile=aws_profile)
    response = p.list_instances(
        InstancesRequest(p.region, zone, order_by, filter, max_pages, results_per_page)
    )
    count = _drain(
        response,
        ["NAME", "ID", "TYPE", "IP ADDRESS", "STATUS"],
        lambda i: [
            _tag(i, "Name", i["InstanceId"]),
            i["InstanceId"],
            i.get("InstanceType", ""),
            i.get("PublicIpAddress", "N/A"),
            i["State"]["Name"],
        ],
    )
    log(f"{count} instance(s) in '{zone}'")


@instance_app.command(name="find")
def find_instance(name: str, zone: str, *, aws_profile: str | None = None):
    """Show an instance by name.

    :param name: Instance Name tag
    :param zone: Availability zone
    :param aws_profile: AWS profile name
    """
    p = AWSProvider(region=zone, aws_profile=aws_profile)
    instance = p.find_instance(InstanceRequest(region=p.region, zone=zone, name=name))
    print(f"  ID: {instance['InstanceId']}")
    print(f"  Type: {instance.get('InstanceType', '')}")
    print(f"  State: {instance['State']['Name']}")
    print(f"  Public IP: {instance.get('PublicIpAddress', 'N/A')}")
    print(f"  Private IP: {instance.get('PrivateIpAddress', 'N/A')}")


@instance_app.command(name="create")
def create_instance(
    name: str,
    zone: str,
    *,
    vm_size: str | None = None,
    cpus: int = 0,
    memory_mb: int = 0,
    disk_size_gb: int = 10,
    description: str = "",
    public_ip: bool = True,
    can_forward_ip: bool = False,
    iam_instance_profile: str | None = None,
    user_data: Path | None = None,
    wait: bool = True,
    aws_profile: str | None = None,
):
    """Create an instance.

    :param name: Instance Name tag
    :param zone: Availability zone
    :param vm_size: Instance type, e.g. t3.small (default: t3.micro)
    :param cpus: Custom shape: vCPUs (1 or even, up to 32)
    :param memory_mb: Custom shape: memory in MiB (multiple of 256)
    :param disk_size_gb: Boot disk size
    :param description: Stored as the Description tag
    :param public_ip: Assign a public IPv4 address
    :param can_forward_ip: Disable the source/destination check
    :param iam_instance_profile: Instance profile to attach
    :param user_data: Cloud-init script passed to the instance
    :param wait: Wait until the instance is running
    :param aws_profile: AWS profile name
    """
    machine_type = None
    if vm_size or cpus or memory_mb:
        machine_type = MachineType(type=vm_size or "", cpu_count=cpus, memory_mb=memory_mb)

    if user_data and not user_data.is_file():
        error(f"File not found: '{user_data}'")

    p = AWSProvider(region=zone, aws_profile=aws_profile)
    p.validate_auth()
    instance = p.create_instance(
        InstanceRequest(
            region=p.region,
            zone=zone,
            name=name,
            description=description,
            machine_type=machine_type,
            can_forward_ip=can_forward_ip,
            disk_size_gb=disk_size_gb,
            public_ip=public_ip,
            iam_instance_profile=iam_instance_profile,
            user_data=user_data.read_text() if user_data else "",
            block_until_completion=wait,
        )
    )
    log("Instance created!")
    print(f"  ID: {instance['InstanceId']}")
    print(f"  IP: {instance.get('PublicIpAddress', 'N/A')}")


@dns_app.command(name="list")
def list_record_sets(
    hosted_zone: str,
    *,
    domain: str = "",
    max_pages: int = 0,
    results_per_page: int = 0,
    aws_profile: str | None = None,
):
    """List record sets in a hosted zone.

    :param hosted_zone: Route53 hosted zone ID
    :param domain: Only list record sets with exactly this name
    :param max_pages: Stop after this many pages (0 = all)
    :param results_per_page: Page size (0 = 40)
    :param aws_profile: AWS profile name
    """
    p = AWSProvider(aws_profile=aws_profile)
    response = p.list_dns_record_sets(
        RecordSetRequest(hosted_zone, domain, max_pages, results_per_page)
    )
    count = _drain(
        response,
        ["NAME", "TYPE", "TTL", "VALUES"],
        lambda r: [
            r["Name"],
            r["Type"],
            str(r.get("TTL", "")),
            ", ".join(v["Value"] for v in r.get("ResourceRecords", [])),
        ],
    )
    log(f"{count} record set(s)")


def _a_and_cname_records(domain: str, ips: list[str], aliases: list[str]) -> list[Record]:
    records = [Record(domain, "A", ipv4_addresses=tuple(ips))] if ips else []
    records += [Record(alias, "CNAME", canonical_name=domain) for alias in aliases]
    return records


@dns_app.command(name="add")
def add_records(
    domain: str,
    *,
    ip: list[str] | None = None,
    alias: list[str] | None = None,
    hosted_zone: str | None = None,
    aws_profile: str | None = None,
):
    """Add an A record for a domain and CNAME records for its aliases.

    :param domain: Domain name, e.g. app.example.com
    :param ip: IPv4 address for the A record (repeatable)
    :param alias: Name to point at the domain with a CNAME (repeatable)
    :param hosted_zone: Route53 hosted zone ID (default: looked up from domain)
    :param aws_profile: AWS profile name
    """
    p = AWSProvider(aws_profile=aws_profile)
    change = p.add_record_sets(
        UpdateRequest(
            hosted_zone=hosted_zone or p.find_hosted_zone(domain),
            records=tuple(_a_and_cname_records(domain, ip or [], alias or [])),
        )
    )
    log(f"Change '{change['id']}' is {change['status']}")


@dns_app.command(name="delete")
def delete_records(
    domain: str,
    *,
    ip: list[str] | None = None,
    alias: list[str] | None = None,
    hosted_zone: str | None = None,
    aws_profile: str | None = None,
):
    """Delete an A record and CNAME aliases. Values must match the existing records.

    :param domain: Domain name
    :param ip: IPv4 addresses of the A record (repeatable)
    :param alias: CNAME alias to delete (repeatable)
    :param hosted_zone: Route53 hosted zone ID (default: looked up from domain)
    :param aws_profile: AWS profile name
    """
    p = AWSProvider(aws_profile=aws_profile)
    change = p.delete_record_sets(
        UpdateRequest(
            hosted_zone=hosted_zone or p.find_hosted_zone(domain),
            records=tuple(_a_and_cname_records(domain, ip or [], alias or [])),
        )
    )
    log(f"Change '{change['id']}' is {change['status']}")


@dns_app.command(name="check")
def check_dns_command(
    domain: str, ip: str, *, retries: int = 30, delay: int = 10
):
    """Wait until a domain resolves to the expected address.

    :param domain: Domain name
    :param ip: Expected IPv4 address
    :param retries: Number of lookups before giving up
    :param delay: Seconds between lookups
    """
    if not check_dns(domain, ip, retries=retries, delay=delay):
        error(f"DNS verification timeout: '{domain}' does not resolve to '{ip}'")


@storage_app.command(name="upload")
def upload(
    path: Path,
    bucket: str,
    *,
    name: str | None = None,
    public: bool = False,
    aws_profile: str | None = None,
):
    """Upload a file to a bucket, creating the bucket if needed.

    :param path: Local file
    :param bucket: S3 bucket name
    :param name: Object key (default: file name)
    :param public: Make the object publicly readable
    :param aws_profile: AWS profile name
    """
    if not path.is_file():
        error(f"File not found: '{path}'")
    p = AWSProvider(aws_profile=aws_profile)
    obj = p.upload_with_params(
        UploadParams(
            bucket=bucket,
            name=name or path.name,
            reader=lambda: path.open("rb"),
            public=public,
        )
    )
    log(f"Uploaded {obj['size']} bytes")
    print(f"  URL: {object_url(obj)}")


@storage_app.command(name="download")
def download(
    bucket: str, name: str, dest: Path, *, aws_profile: str | None = None
):
    """Download an object to a local file.

    :param bucket: S3 bucket name
    :param name: Object key
    :param dest: Local destination path
    :param aws_profile: AWS profile name
    """
    p = AWSProvider(aws_profile=aws_profile)
    body = p.download(bucket, name)
    try:
        with dest.open("wb") as f:
            for chunk in body.iter_chunks():
                f.write(chunk)
    finally:
        body.close()
    log(f"Wrote {dest.stat().st_size} bytes to '{dest}'")


@setup_app.command(name="run")
def run_setup(
    domain: str,
    *,
    zone: str,
    ip: list[str] | None = None,
    alias: list[str] | None = None,
    machine_name: str = "",
    description: str = "",
    proxy_address: str = "",
    env: list[str] | None = None,
    target_os: str = "debian",
    hosted_zone: str = "",
    bucket: str = "",
    aws_profile: str | None = None,
):
    """Point DNS at a server and publish a front-end bundle for it.

    Creates an instance named MACHINE_NAME when no --ip is given.

    :param domain: Domain served by the front-end
    :param zone: Availability zone for a new instance
    :param ip: Existing server IPv4 address (repeatable)
    :param alias: Extra name served by the front-end (repeatable)
    :param machine_name: Name for a new instance
    :param description: Description tag for a new instance
    :param proxy_address: Backend URL nginx proxies to (default: http://127.0.0.1:3000)
    :param env: KEY=VALUE line for the bundle env file (repeatable)
    :param target_os: Server distribution (debian or ubuntu)
    :param hosted_zone: Route53 hosted zone ID (default: looked up from domain)
    :param bucket: Bundle bucket (default: DEPLOYINFRA_ARTIFACT_BUCKET)
    :param aws_profile: AWS profile name
    """
    p = AWSProvider(region=zone, aws_profile=aws_profile)
    p.validate_auth()
    result = full_setup(
        p,
        Setup(
            region=p.region,
            zone=zone,
            domain_name=domain,
            hosted_zone=hosted_zone,
            machine_name=machine_name,
            project_description=description,
            ipv4_addresses=tuple(ip or []),
            aliases=tuple(alias or []),
            proxy_address=proxy_address,
            environ=tuple(env or []),
            target_os=target_os,
            bucket=bucket,
        ),
    )
    log("Setup complete!")
    print(f"  Bundle: {result['bundle_url']}")
    print(f"  Redirect: {result['non_https_redirect_url']}")
    for d in result["domains"]:
        print(f"  Domain: {d}")


def main():
    load_dotenv()
    setup_logging(os.getenv("DEPLOYINFRA_LOG_LEVEL", logging.INFO))
    try:
        app()
    except (DeployInfraError, ClientError, BotoCoreError) as e:
        error(str(e))


if __name__ == "__main__":
    main()
