"""One-shot front-end setup: server, DNS records and a deployable bundle.

full_setup() chains the provider operations:

1. Use the given IPv4 addresses, or create an instance and take its addresses
2. Add an A record for the domain and a CNAME for each alias
3. Build a bundle with nginx config serving the https domains and proxying
   to the backend, plus an install script that obtains certificates
4. Upload the bundle publicly and return its URL
"""

import io
import json
import os
import tarfile
import time
from textwrap import dedent
from typing import NamedTuple
from uuid import uuid4

from dotenv import load_dotenv

from .errors import ValidationError
from .providers import AWSProvider, InstanceRequest, UploadParams, object_url
from .records import Record, UpdateRequest
from .types import SetupResponse
from .utils import httpsify, log, strip_trailing_dot

DEFAULT_ARTIFACT_BUCKET = "deployinfra-frontend-bundles"
DEFAULT_PROXY_ADDRESS = "http://127.0.0.1:3000"
TARGET_OS_CHOICES = ("debian", "ubuntu")


class Setup(NamedTuple):
    """Everything needed to stand up a front-end for a domain.

    :param hosted_zone: Route 53 hosted zone ID (looked up from domain_name if blank)
    :param ipv4_addresses: Existing server addresses; an instance named
        machine_name is created when empty
    :param aliases: Extra names pointed at domain_name with CNAME records
    :param proxy_address: Backend URL that nginx proxies requests to
    :param environ: KEY=VALUE lines written to the bundle's env file
    :param target_os: Distribution the install script targets
    """

    region: str = ""
    zone: str = ""
    domain_name: str = ""
    hosted_zone: str = ""
    machine_name: str = ""
    project_description: str = ""
    ipv4_addresses: tuple[str, ...] = ()
    aliases: tuple[str, ...] = ()
    proxy_address: str = ""
    environ: tuple[str, ...] = ()
    target_os: str = "debian"
    bucket: str = ""

    def validate(self) -> None:
        if not self.region.strip():
            raise ValidationError("expecting a non-empty region")
        if not self.zone.strip():
            raise ValidationError("expecting a non-empty zone")
        if not self.domain_name.strip():
            raise ValidationError("expecting a non-empty domain name")
        if not self.ipv4_addresses and not self.machine_name.strip():
            raise ValidationError("expecting IPv4 addresses or a machine name to create")
        if self.target_os not in TARGET_OS_CHOICES:
            raise ValidationError(
                f"Unsupported target OS: '{self.target_os}' "
                f"(choose from {', '.join(TARGET_OS_CHOICES)})"
            )
        for line in self.environ:
            if "=" not in line:
                raise ValidationError(f"Invalid environ entry: '{line}' (expected KEY=VALUE)")


def artifact_bucket(req: Setup) -> str:
    load_dotenv()
    return req.bucket or os.getenv("DEPLOYINFRA_ARTIFACT_BUCKET", DEFAULT_ARTIFACT_BUCKET)


def ipv4_addresses_from_instance(instance: dict) -> list[str]:
    """Public addresses of all interfaces, falling back to private ones."""
    public, private = [], []
    for interface in instance.get("NetworkInterfaces", []):
        association = interface.get("Association") or {}
        if association.get("PublicIp"):
            public.append(association["PublicIp"])
        if interface.get("PrivateIpAddress"):
            private.append(interface["PrivateIpAddress"])
    if not public and instance.get("PublicIpAddress"):
        public.append(instance["PublicIpAddress"])
    return public or private


def generate_nginx_config(
    domains: list[str], proxy_address: str, redirect_url: str
) -> str:
    """nginx site with an https server for the domains and an http redirect.

    :param domains: https URLs served by this front-end
    :param proxy_address: Backend URL requests are proxied to
    :param redirect_url: Where plain http requests are redirected
    """
    hosts = [d.removeprefix("https://") for d in domains]
    server_names = " ".join(hosts)
    cert_dir = f"/etc/letsencrypt/live/{hosts[0]}"
    return dedent(f"""
        server {{
            listen 80;
            server_name {server_names};
            return 301 {redirect_url}$request_uri;
        }}

        server {{
            listen 443 ssl;
            server_name {server_names};

            ssl_certificate {cert_dir}/fullchain.pem;
            ssl_certificate_key {cert_dir}/privkey.pem;

            location / {{
                proxy_pass {proxy_address};
                proxy_http_version 1.1;
                proxy_set_header Upgrade $http_upgrade;
                proxy_set_header Connection 'upgrade';
                proxy_set_header Host $host;
                proxy_set_header X-Real-IP $remote_addr;
                proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
                proxy_set_header X-Forwarded-Proto $scheme;
                proxy_cache_bypass $http_upgrade;
            }}
        }}
    """).strip() + "\n"


def generate_install_script(domains: list[str], site_name: str) -> str:
    """Script run on the server from the unpacked bundle directory."""
    hosts = [d.removeprefix("https://") for d in domains]
    cert_args = " ".join(f"-d {h}" for h in hosts)
    return dedent(f"""
        #!/usr/bin/env bash
        set -e
        cd "$(dirname "$0")"
        sudo apt-get update
        sudo apt-get install -y nginx certbot python3-certbot-nginx
        sudo install -m 600 frontend.env /etc/default/{site_name}
        sudo systemctl stop nginx
        sudo certbot certonly --standalone {cert_args} \\
            --non-interactive --agree-tos --register-unsafely-without-email \\
            --keep-until-expiring
        sudo cp nginx.conf /etc/nginx/sites-available/{site_name}
        sudo ln -sf /etc/nginx/sites-available/{site_name} /etc/nginx/sites-enabled/{site_name}
        sudo rm -f /etc/nginx/sites-enabled/default
        sudo nginx -t
        sudo systemctl start nginx
        sudo systemctl enable --now certbot.timer
    """).strip() + "\n"


def generate_bundle(
    domains: list[str],
    proxy_address: str,
    redirect_url: str,
    environ: tuple[str, ...] = (),
    target_os: str = "debian",
) -> bytes:
    """Build the front-end bundle as a gzipped tarball.

    :return: Tarball bytes containing nginx.conf, install.sh, frontend.env
        and manifest.json
    """
    if not domains:
        raise ValidationError("expecting at least one domain")
    site_name = domains[0].removeprefix("https://")
    manifest = {
        "domains": domains,
        "proxy_address": proxy_address,
        "non_https_redirect_url": redirect_url,
        "target_os": target_os,
    }
    files = {
        "nginx.conf": (generate_nginx_config(domains, proxy_address, redirect_url), 0o644),
        "install.sh": (generate_install_script(domains, site_name), 0o755),
        "frontend.env": ("".join(f"{line}\n" for line in environ), 0o600),
        "manifest.json": (json.dumps(manifest, indent=2) + "\n", 0o644),
    }

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, (content, mode) in files.items():
            data = content.encode()
            info = tarfile.TarInfo(f"frontend/{name}")
            info.size = len(data)
            info.mode = mode
            info.mtime = int(time.time())
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def _generate_addresses(provider: AWSProvider, req: Setup) -> list[str]:
    instance = provider.create_instance(
        InstanceRequest(
            region=req.region,
            zone=req.zone,
            name=req.machine_name,
            description=req.project_description,
            block_until_completion=True,
        )
    )
    addresses = ipv4_addresses_from_instance(instance)
    if not addresses:
        raise ValidationError(f"Instance '{req.machine_name}' has no IPv4 address")
    return addresses


def _generate_record_sets(provider: AWSProvider, req: Setup, addresses: list[str]):
    records = [Record(req.domain_name, "A", ipv4_addresses=tuple(addresses))]
    records += [
        Record(alias, "CNAME", canonical_name=req.domain_name) for alias in req.aliases
    ]
    hosted_zone = req.hosted_zone or provider.find_hosted_zone(req.domain_name)
    return provider.add_record_sets(
        UpdateRequest(hosted_zone=hosted_zone, records=tuple(records))
    )


def full_setup(provider: AWSProvider, req: Setup) -> SetupResponse:
    """Stand up DNS and a front-end bundle for req.domain_name.

    :raises ValidationError: If the setup request is incomplete
    """
    req.validate()

    addresses = list(req.ipv4_addresses)
    if not addresses:
        log(f"No addresses given, creating instance '{req.machine_name}'...")
        addresses = _generate_addresses(provider, req)

    change = _generate_record_sets(provider, req, addresses)

    domains = [httpsify(strip_trailing_dot(r["Name"])) for r in change["additions"]]
    redirect_url = httpsify(req.domain_name)

    bundle = generate_bundle(
        domains,
        req.proxy_address or DEFAULT_PROXY_ADDRESS,
        redirect_url,
        environ=req.environ,
        target_os=req.target_os,
    )
    obj = provider.upload_with_params(
        UploadParams(
            bucket=artifact_bucket(req),
            name=f"generated-bundle-{uuid4()}.tar.gz",
            reader=lambda: io.BytesIO(bundle),
            public=True,
            content_type="application/gzip",
        )
    )

    return {
        "bundle_url": object_url(obj),
        "domains": domains,
        "dns_additions": change["additions"],
        "non_https_redirect_url": redirect_url,
    }
