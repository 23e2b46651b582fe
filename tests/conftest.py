"""Shared fixtures: scripted listers, fake AWS clients and a provider wired to them."""

import pytest

from deployinfra.errors import AuthError
from deployinfra.paginate import Paginator
from deployinfra.providers import AWSProvider


def pytest_addoption(parser):
    parser.addoption(
        "--region",
        default="ap-southeast-2",
        help="AWS region for integration tests (default: ap-southeast-2)",
    )


@pytest.fixture(scope="session")
def region(request):
    return request.config.getoption("--region")


class ScriptedLister:
    """Serves fixed pages; the continuation token is the next page index.

    Records every call so tests can check which tokens were requested.
    """

    def __init__(self, pages, fail_at=None, error=None):
        self.pages = pages
        self.fail_at = fail_at
        self.error = error or RuntimeError("fetch failed")
        self.calls = []

    def fetch_page(self, token, page_size, filter, order_by):
        self.calls.append(
            {"token": token, "page_size": page_size, "filter": filter, "order_by": order_by}
        )
        index = int(token) if token else 0
        if index == self.fail_at:
            raise self.error
        next_token = str(index + 1) if index + 1 < len(self.pages) else ""
        return self.pages[index], next_token

    @property
    def tokens(self):
        return [c["token"] for c in self.calls]


class EndlessLister:
    """Always has another page."""

    def __init__(self):
        self.calls = 0

    def fetch_page(self, token, page_size, filter, order_by):
        self.calls += 1
        return [f"item-{self.calls}"], f"token-{self.calls}"


class FakeEC2:
    def __init__(self, zones=None, instance_pages=None):
        self.zones = zones or []
        self.instance_pages = instance_pages or []
        self.calls = []
        self.launched = {}

    def describe_availability_zones(self, **params):
        self.calls.append(("describe_availability_zones", params))
        return {"AvailabilityZones": self.zones}

    def describe_instances(self, **params):
        self.calls.append(("describe_instances", params))
        if "NextToken" not in params and "MaxResults" not in params:
            names = next(
                (f["Values"] for f in params.get("Filters", []) if f["Name"] == "tag:Name"),
                [],
            )
            instances = [i for i in self.launched.values() if i["Name"] in names]
            return {"Reservations": [{"Instances": instances}] if instances else []}
        index = int(params.get("NextToken", "0"))
        response = {"Reservations": [{"Instances": self.instance_pages[index]}]}
        if index + 1 < len(self.instance_pages):
            response["NextToken"] = str(index + 1)
        return response

    def describe_images(self, **params):
        self.calls.append(("describe_images", params))
        return {
            "Images": [
                {"ImageId": "ami-old", "CreationDate": "2024-01-01T00:00:00.000Z"},
                {"ImageId": "ami-new", "CreationDate": "2025-06-01T00:00:00.000Z"},
            ]
        }

    def run_instances(self, **params):
        self.calls.append(("run_instances", params))
        name = next(t["Value"] for t in params["TagSpecifications"][0]["Tags"] if t["Key"] == "Name")
        instance_id = f"i-{len(self.launched) + 1:04d}"
        self.launched[instance_id] = {
            "InstanceId": instance_id,
            "Name": name,
            "InstanceType": params["InstanceType"],
            "State": {"Name": "pending"},
            "PublicIpAddress": "203.0.113.10",
            "NetworkInterfaces": [
                {
                    "PrivateIpAddress": "10.0.0.10",
                    "Association": {"PublicIp": "203.0.113.10"},
                }
            ],
        }
        return {"Instances": [{"InstanceId": instance_id}]}

    def modify_instance_attribute(self, **params):
        self.calls.append(("modify_instance_attribute", params))

    def get_waiter(self, name):
        ec2 = self

        class Waiter:
            def wait(self, **params):
                ec2.calls.append(("wait", name, params))
                for instance_id in params["InstanceIds"]:
                    ec2.launched[instance_id]["State"] = {"Name": "running"}

        return Waiter()


class FakeRoute53:
    """Keeps record sets in listing order and pages them like Route 53."""

    def __init__(self, record_sets=None, hosted_zones=None):
        self.record_sets = record_sets or []
        self.hosted_zones = hosted_zones or []
        self.calls = []
        self.change_batches = []

    def _start_index(self, params):
        name = params.get("StartRecordName")
        if name is None:
            return 0
        record_type = params.get("StartRecordType")
        for i, r in enumerate(self.record_sets):
            if r["Name"] == name and (record_type is None or r["Type"] == record_type):
                return i
        return next(
            (i for i, r in enumerate(self.record_sets) if r["Name"] > name),
            len(self.record_sets),
        )

    def list_resource_record_sets(self, **params):
        self.calls.append(("list_resource_record_sets", params))
        start = self._start_index(params)
        size = int(params["MaxItems"])
        page = self.record_sets[start : start + size]
        response = {"ResourceRecordSets": page, "IsTruncated": False}
        if start + size < len(self.record_sets):
            following = self.record_sets[start + size]
            response.update(
                IsTruncated=True,
                NextRecordName=following["Name"],
                NextRecordType=following["Type"],
            )
        return response

    def list_hosted_zones_by_name(self, **params):
        self.calls.append(("list_hosted_zones_by_name", params))
        zones = [z for z in self.hosted_zones if z["Name"] >= params["DNSName"]]
        return {"HostedZones": zones[: int(params["MaxItems"])]}

    def change_resource_record_sets(self, **params):
        self.calls.append(("change_resource_record_sets", params))
        self.change_batches.append(params)
        return {"ChangeInfo": {"Id": "/change/C1", "Status": "PENDING"}}


@pytest.fixture
def clients():
    return {"ec2": FakeEC2(), "route53": FakeRoute53()}


@pytest.fixture
def provider(monkeypatch, clients):
    """AWSProvider in us-east-1 with no throttle and fake clients."""
    monkeypatch.delenv("AWS_PROFILE", raising=False)
    monkeypatch.delenv("DEPLOYINFRA_THROTTLE_MS", raising=False)
    p = AWSProvider(region="us-east-1", paginator=Paginator(throttle=0))
    monkeypatch.setattr(p, "_client", lambda service, region=None: clients[service])
    return p


@pytest.fixture(scope="session")
def live_provider(region):
    """AWSProvider against a real account; skips integration tests without credentials."""
    p = AWSProvider(region=region)
    try:
        p.validate_auth()
    except AuthError as e:
        pytest.skip(f"No usable AWS credentials: {e}")
    return p
