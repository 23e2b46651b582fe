"""DNS record models and their conversion to Route 53 record sets."""

import time
from typing import NamedTuple, get_args

import dns.exception
import dns.resolver

from .errors import ValidationError
from .types import RecordType, ResourceRecordSet
from .utils import dedup, ensure_trailing_dot, log, warn

RECORD_TYPES: tuple[str, ...] = get_args(RecordType)
DEFAULT_TTL = 300

# Record field holding the values for each record type
_VALUE_FIELDS = {
    "A": ("ipv4_addresses", "expecting at least one IPV4 address"),
    "AAAA": ("ipv6_addresses", "expecting at least one IPV6 address"),
    "CAA": (
        "certificate_authority_authorizations",
        "expecting at least one certificate authority authorization",
    ),
    "MX": (
        "preference_and_mail_servers",
        "expecting at least one preference and mail server",
    ),
    "NS": ("name_servers", "expecting at least one name server"),
    "SPF": ("spf_data", "expecting at least one SPF record"),
    "SRV": ("srv_data", "expecting at least one SRV record"),
    "TXT": ("txt_records", "expecting at least one TXT record"),
}


class Record(NamedTuple):
    """One DNS record set to add or delete.

    Only the value field matching ``type`` is used, e.g. ``ipv4_addresses``
    for A records or ``canonical_name`` for CNAME records.
    """

    dns_name: str
    type: RecordType
    ttl: int = DEFAULT_TTL
    ipv4_addresses: tuple[str, ...] = ()
    ipv6_addresses: tuple[str, ...] = ()
    canonical_name: str = ""
    name_servers: tuple[str, ...] = ()
    certificate_authority_authorizations: tuple[str, ...] = ()
    preference_and_mail_servers: tuple[str, ...] = ()
    spf_data: tuple[str, ...] = ()
    srv_data: tuple[str, ...] = ()
    txt_records: tuple[str, ...] = ()

    def validate(self) -> "Record":
        """Check the record and return a copy with trimmed, deduplicated values.

        :raises ValidationError: If the name is blank, the type is unknown or
            the values for the type are empty
        """
        if not self.dns_name.strip():
            raise ValidationError("expecting a non-blank DNS name")
        if self.type not in RECORD_TYPES:
            raise ValidationError(f"unknown record type: '{self.type}'")

        if self.type == "CNAME":
            if not self.canonical_name.strip():
                raise ValidationError("expecting a non-blank canonical name")
            return self._replace(canonical_name=self.canonical_name.strip())

        field, message = _VALUE_FIELDS[self.type]
        values = dedup(*getattr(self, field))
        if not values:
            raise ValidationError(message)
        return self._replace(**{field: tuple(values)})

    def values(self) -> list[str]:
        if self.type == "CNAME":
            return [ensure_trailing_dot(self.canonical_name)]
        field, _ = _VALUE_FIELDS[self.type]
        values = list(getattr(self, field))
        if self.type in ("TXT", "SPF"):
            values = [v if v.startswith('"') else f'"{v}"' for v in values]
        return values

    def to_record_set(self) -> ResourceRecordSet:
        return {
            # Route 53 names are fully qualified
            "Name": ensure_trailing_dot(self.dns_name.strip()),
            "Type": self.type,
            "TTL": self.ttl,
            "ResourceRecords": [{"Value": v} for v in self.values()],
        }


def to_record_sets(*records: Record) -> list[ResourceRecordSet]:
    return [record.validate().to_record_set() for record in records]


class UpdateRequest(NamedTuple):
    """Change to a hosted zone.

    ``records`` is the input for add_record_sets/delete_record_sets;
    update_record_sets uses ``additions`` and ``deletions`` directly.
    """

    hosted_zone: str = ""
    records: tuple[Record, ...] = ()
    additions: tuple[Record, ...] = ()
    deletions: tuple[Record, ...] = ()

    def validate(self) -> None:
        if not self.hosted_zone.strip():
            raise ValidationError("expecting a non-blank hosted zone")


def resolve_dns_a(domain: str, nameserver: str = "8.8.8.8") -> str | None:
    """Resolve domain to IPv4 address.

    :param nameserver: DNS nameserver IP (default: 8.8.8.8)
    :return: First A record IP or None
    """
    resolver = dns.resolver.Resolver(configure=False)
    resolver.nameservers = [nameserver]
    try:
        answer = resolver.resolve(domain, "A")
    except (
        dns.resolver.NXDOMAIN,
        dns.resolver.NoAnswer,
        dns.resolver.NoNameservers,
        dns.exception.Timeout,
    ):
        return None
    return str(answer[0]) if answer else None


def check_dns(domain: str, expected_ip: str, retries: int = 30, delay: int = 10) -> bool:
    """Poll until domain resolves to expected_ip.

    :return: True once resolved, False after retries lookups
    """
    for i in range(retries):
        resolved = resolve_dns_a(domain)
        if resolved == expected_ip:
            log(f"DNS verified: '{domain}' -> '{expected_ip}'")
            return True
        warn(f"Waiting for DNS... ({i + 1}/{retries}) '{domain}' -> '{resolved or 'nothing'}'")
        if i < retries - 1:
            time.sleep(delay)
    return False
