"""Tests for the one-shot front-end setup and its generated bundle."""

import io
import json
import tarfile

import pytest

from deployinfra.errors import ValidationError
from deployinfra.frontend import (
    DEFAULT_ARTIFACT_BUCKET,
    DEFAULT_PROXY_ADDRESS,
    Setup,
    artifact_bucket,
    full_setup,
    generate_bundle,
    generate_nginx_config,
    ipv4_addresses_from_instance,
)
from deployinfra.records import to_record_sets


class FakeProvider:
    """Records the provider calls full_setup makes."""

    def __init__(self):
        self.created = []
        self.updates = []
        self.uploads = []
        self.zone_lookups = []

    def create_instance(self, req):
        self.created.append(req)
        return {
            "InstanceId": "i-0001",
            "NetworkInterfaces": [
                {"PrivateIpAddress": "10.0.0.5", "Association": {"PublicIp": "203.0.113.5"}}
            ],
        }

    def find_hosted_zone(self, domain):
        self.zone_lookups.append(domain)
        return "/hostedzone/Z1"

    def add_record_sets(self, req):
        self.updates.append(req)
        return {
            "id": "/change/C1",
            "status": "PENDING",
            "additions": to_record_sets(*req.records),
            "deletions": [],
        }

    def upload_with_params(self, params):
        data = params.reader().read()
        self.uploads.append((params, data))
        return {"bucket": params.bucket, "name": params.name, "size": len(data)}


def _bundle_files(data):
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
        return {
            member.name: (tar.extractfile(member).read().decode(), member.mode)
            for member in tar.getmembers()
        }


def _setup(**kwargs):
    fields = {
        "region": "us-east-1",
        "zone": "us-east-1a",
        "domain_name": "example.com",
        "ipv4_addresses": ("203.0.113.1",),
    }
    fields.update(kwargs)
    return Setup(**fields)


def test_full_setup_with_existing_addresses():
    provider = FakeProvider()
    req = _setup(
        ipv4_addresses=("203.0.113.1",),
        aliases=("www.example.com",),
        hosted_zone="Z9",
        environ=("API_KEY=secret",),
        bucket="my-bundles",
    )

    response = full_setup(provider, req)

    assert provider.created == []
    assert provider.zone_lookups == []
    [update] = provider.updates
    assert update.hosted_zone == "Z9"
    assert [(r.dns_name, r.type) for r in update.records] == [
        ("example.com", "A"),
        ("www.example.com", "CNAME"),
    ]

    assert response["domains"] == ["https://example.com", "https://www.example.com"]
    assert response["non_https_redirect_url"] == "https://example.com"
    assert [r["Name"] for r in response["dns_additions"]] == [
        "example.com.",
        "www.example.com.",
    ]

    [(params, data)] = provider.uploads
    assert params.bucket == "my-bundles"
    assert params.public is True
    assert params.content_type == "application/gzip"
    assert params.name.startswith("generated-bundle-") and params.name.endswith(".tar.gz")
    assert response["bundle_url"] == f"https://my-bundles.s3.amazonaws.com/{params.name}"

    files = _bundle_files(data)
    assert files["frontend/frontend.env"] == ("API_KEY=secret\n", 0o600)
    manifest = json.loads(files["frontend/manifest.json"][0])
    assert manifest["domains"] == response["domains"]
    assert manifest["proxy_address"] == DEFAULT_PROXY_ADDRESS


def test_full_setup_creates_instance_when_no_addresses():
    provider = FakeProvider()
    req = _setup(ipv4_addresses=(), machine_name="frontend-1", project_description="shop")

    response = full_setup(provider, req)

    [created] = provider.created
    assert created.name == "frontend-1"
    assert created.zone == "us-east-1a"
    assert created.description == "shop"
    assert created.block_until_completion is True
    assert provider.zone_lookups == ["example.com"]
    assert provider.updates[0].records[0].ipv4_addresses == ("203.0.113.5",)
    assert response["domains"] == ["https://example.com"]


@pytest.mark.parametrize(
    "req",
    [
        _setup(region=""),
        _setup(zone=" "),
        _setup(domain_name=""),
        _setup(target_os="windows"),
        _setup(environ=("NOT_A_PAIR",)),
        _setup(ipv4_addresses=(), machine_name=""),
    ],
)
def test_full_setup_rejects_invalid_request(req):
    provider = FakeProvider()

    with pytest.raises(ValidationError):
        full_setup(provider, req)

    assert provider.created == provider.updates == provider.uploads == []


def test_generate_nginx_config():
    config = generate_nginx_config(
        ["https://example.com", "https://www.example.com"],
        "http://127.0.0.1:8000",
        "https://example.com",
    )

    assert "server_name example.com www.example.com;" in config
    assert "return 301 https://example.com$request_uri;" in config
    assert "ssl_certificate /etc/letsencrypt/live/example.com/fullchain.pem;" in config
    assert "proxy_pass http://127.0.0.1:8000;" in config


def test_generate_bundle_contents():
    data = generate_bundle(["https://example.com"], DEFAULT_PROXY_ADDRESS, "https://example.com")

    files = _bundle_files(data)

    assert sorted(files) == [
        "frontend/frontend.env",
        "frontend/install.sh",
        "frontend/manifest.json",
        "frontend/nginx.conf",
    ]
    script, mode = files["frontend/install.sh"]
    assert mode == 0o755
    assert script.startswith("#!/usr/bin/env bash\n")
    assert "certbot certonly --standalone -d example.com" in script
    assert "/etc/nginx/sites-available/example.com" in script


def test_generate_bundle_requires_domain():
    with pytest.raises(ValidationError):
        generate_bundle([], DEFAULT_PROXY_ADDRESS, "https://example.com")


def test_ipv4_addresses_from_instance():
    assert ipv4_addresses_from_instance(
        {
            "NetworkInterfaces": [
                {"PrivateIpAddress": "10.0.0.1", "Association": {"PublicIp": "203.0.113.1"}},
                {"PrivateIpAddress": "10.0.0.2"},
            ]
        }
    ) == ["203.0.113.1"]
    assert ipv4_addresses_from_instance(
        {"NetworkInterfaces": [{"PrivateIpAddress": "10.0.0.1"}]}
    ) == ["10.0.0.1"]
    assert ipv4_addresses_from_instance({"PublicIpAddress": "203.0.113.7"}) == ["203.0.113.7"]
    assert ipv4_addresses_from_instance({}) == []


def test_artifact_bucket(monkeypatch):
    monkeypatch.delenv("DEPLOYINFRA_ARTIFACT_BUCKET", raising=False)
    assert artifact_bucket(_setup()) == DEFAULT_ARTIFACT_BUCKET

    monkeypatch.setenv("DEPLOYINFRA_ARTIFACT_BUCKET", "from-env")
    assert artifact_bucket(_setup()) == "from-env"
    assert artifact_bucket(_setup(bucket="explicit")) == "explicit"
