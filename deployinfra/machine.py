"""Machine types, boot disks and network interfaces for new EC2 instances."""

import re
from typing import NamedTuple

from .errors import ValidationError

# Debian 12 AMIs published by the Debian project account
DEFAULT_OS_IMAGE = "debian-12-{arch}-*"
DEBIAN_AMI_OWNER = "136693071363"

DEFAULT_DISK_SIZE_GB = 10

# name: (vCPUs, memory MiB)
INSTANCE_TYPES = {
    "t2.micro": (1, 1024),
    "t2.small": (1, 2048),
    "t3.micro": (2, 1024),
    "t3.small": (2, 2048),
    "t3.medium": (2, 4096),
    "t3.large": (2, 8192),
    "t3.xlarge": (4, 16384),
    "t3.2xlarge": (8, 32768),
    "t4g.micro": (2, 1024),
    "t4g.small": (2, 2048),
    "t4g.medium": (2, 4096),
    "t4g.large": (2, 8192),
    "c5.large": (2, 4096),
    "c5.xlarge": (4, 8192),
    "c5.2xlarge": (8, 16384),
    "c5.4xlarge": (16, 32768),
    "m5.large": (2, 8192),
    "m5.xlarge": (4, 16384),
    "m5.2xlarge": (8, 32768),
    "m5.4xlarge": (16, 65536),
    "m5.8xlarge": (32, 131072),
    "m6i.large": (2, 8192),
    "m6i.xlarge": (4, 16384),
    "r5.large": (2, 16384),
    "r5.xlarge": (4, 32768),
    "r5.2xlarge": (8, 65536),
    "r5.4xlarge": (16, 131072),
    "r5.8xlarge": (32, 262144),
}

_TYPE_NAME = re.compile(r"^[a-z][a-z0-9-]*\.[a-z0-9]+$")
_ARM_FAMILY = re.compile(r"^[a-z]+\d+g[a-z]*\.")


def is_arm(instance_type: str) -> bool:
    """Graviton families carry a 'g' after the generation digit (t4g, m6g, c7gn)."""
    return bool(_ARM_FAMILY.match(instance_type))


class MachineType(NamedTuple):
    """Either a standard instance type name or a custom CPU/memory shape.

    A custom shape needs 1 or an even number of CPUs up to 32, and memory
    in multiples of 256 MiB. It resolves to the smallest x86 instance type
    in INSTANCE_TYPES that has at least that much of both.
    """

    type: str = ""
    cpu_count: int = 0
    memory_mb: int = 0

    def validate(self) -> None:
        err = None
        for check in (self._validate_as_custom, self._validate_as_standard):
            try:
                check()
                return
            except ValidationError as e:
                err = e
        raise err

    def _validate_as_standard(self) -> None:
        if not self.type:
            raise ValidationError("expecting a non-empty machine type")
        if not _TYPE_NAME.match(self.type):
            raise ValidationError(
                f"Invalid instance type: '{self.type}' (expected e.g. 't3.micro')"
            )

    def _validate_as_custom(self) -> None:
        if self.cpu_count <= 0 or self.cpu_count > 32:
            raise ValidationError("expecting 1 or an even CPU count up to 32")
        if not (self.cpu_count == 1 or self.cpu_count % 2 == 0):
            raise ValidationError("expecting 1 or an even CPU count up to 32")
        if self.memory_mb <= 0 or self.memory_mb % 256 != 0:
            raise ValidationError("memory must be a positive multiple of 256")

    def is_custom(self) -> bool:
        try:
            self._validate_as_custom()
        except ValidationError:
            return False
        return True

    def instance_type(self) -> str:
        """Resolve to the EC2 instance type name used in RunInstances."""
        if not self.is_custom():
            self._validate_as_standard()
            return self.type

        # Ties keep table order, so burstable families win
        candidates = sorted(
            (
                name
                for name, (vcpus, memory) in INSTANCE_TYPES.items()
                if not is_arm(name)
                and vcpus >= self.cpu_count
                and memory >= self.memory_mb
            ),
            key=lambda name: INSTANCE_TYPES[name],
        )
        if not candidates:
            raise ValidationError(
                f"No instance type has {self.cpu_count} vCPUs and {self.memory_mb} MiB"
            )
        return candidates[0]


DEFAULT_MACHINE = MachineType(type="t3.micro")


def root_disk(size_gb: int = DEFAULT_DISK_SIZE_GB) -> list[dict]:
    """Boot volume deleted together with the instance."""
    return [
        {
            "DeviceName": "/dev/xvda",
            "Ebs": {
                "VolumeSize": size_gb,
                "VolumeType": "gp3",
                "DeleteOnTermination": True,
            },
        }
    ]


def network_interface(public_ip: bool = True) -> dict:
    """Primary interface; public_ip gives the instance an external address."""
    return {
        "DeviceIndex": 0,
        "AssociatePublicIpAddress": public_ip,
        "DeleteOnTermination": True,
    }
