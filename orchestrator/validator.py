"""Static checks run against an instance spec before any side effect."""

import ipaddress
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from pydantic import ValidationError as PydanticValidationError

from orchestrator.config import Settings
from orchestrator.schemas import InstanceSpec


MAC_RE = re.compile(r"^[0-9A-Fa-f]{2}(:[0-9A-Fa-f]{2}){5}$")
IFNAMSIZ = 15
ROOT_DRIVE_ID = "rootfs"
RESERVED_RESOURCES = {
    "boot-source",
    "drives",
    "machine-config",
    "balloon",
    "network-interfaces",
    "actions",
}


@dataclass(frozen=True)
class Violation:
    field: str
    reason: str


class ValidationError(RuntimeError):
    def __init__(self, violations: list[Violation]):
        if not violations:
            raise ValueError("ValidationError requires at least one violation")
        self.violations = violations
        self.field = violations[0].field
        self.reason = violations[0].reason
        super().__init__(f"invalid instance spec field={self.field}: {self.reason}")


@dataclass(frozen=True)
class ValidationLimits:
    min_vcpus: int = 1
    max_vcpus: int = 64
    min_mem_mib: int = 1
    max_mem_mib: int = 1024 * 1024
    check_paths: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "ValidationLimits":
        return cls(
            min_vcpus=settings.min_vcpus,
            max_vcpus=settings.max_vcpus,
            min_mem_mib=settings.min_mem_mib,
            max_mem_mib=settings.max_mem_mib,
            check_paths=settings.check_paths,
        )


class _Collector:
    def __init__(self, collect_all: bool):
        self.collect_all = collect_all
        self.violations: list[Violation] = []

    def add(self, field: str, reason: str) -> None:
        self.violations.append(Violation(field, reason))
        if not self.collect_all:
            raise ValidationError(self.violations)

    def finish(self) -> None:
        if self.violations:
            raise ValidationError(self.violations)


def parse_spec(document: Mapping[str, Any]) -> InstanceSpec:
    """Build an InstanceSpec from an operator document.

    Type and shape errors from pydantic are reported as ValidationError so the
    caller sees a single error type for every bad input.
    """
    try:
        return InstanceSpec.model_validate(dict(document))
    except PydanticValidationError as exc:
        violations = [
            Violation(
                ".".join(str(part) for part in err["loc"]) or "spec",
                err["msg"],
            )
            for err in exc.errors()
        ]
        raise ValidationError(violations) from exc


def _check_file(out: _Collector, field: str, value: str, check_paths: bool) -> None:
    if not value or not value.strip():
        out.add(field, "path must not be empty")
        return
    if not check_paths:
        return
    path = Path(value)
    if not path.exists():
        out.add(field, f"path does not exist: {value}")
    elif not path.is_file():
        out.add(field, f"path is not a regular file: {value}")
    elif not os.access(path, os.R_OK):
        out.add(field, f"path is not readable: {value}")


def validate(
    spec: InstanceSpec, limits: ValidationLimits, collect_all: bool = False
) -> None:
    out = _Collector(collect_all)

    _check_file(out, "kernel_image_path", spec.kernel_image_path, limits.check_paths)
    _check_file(out, "rootfs_path", spec.rootfs_path, limits.check_paths)

    drive_ids: set[str] = set()
    for idx, drive in enumerate(spec.extra_drives):
        field = f"extra_drives.{idx}"
        if not drive.drive_id:
            out.add(f"{field}.drive_id", "drive id must not be empty")
        elif drive.drive_id == ROOT_DRIVE_ID:
            out.add(f"{field}.drive_id", f"drive id '{ROOT_DRIVE_ID}' is reserved")
        elif drive.drive_id in drive_ids:
            out.add(f"{field}.drive_id", f"duplicate drive id '{drive.drive_id}'")
        drive_ids.add(drive.drive_id)
        _check_file(out, f"{field}.path_on_host", drive.path_on_host, limits.check_paths)

    if not limits.min_vcpus <= spec.vcpu_count <= limits.max_vcpus:
        out.add(
            "vcpu_count",
            f"must be between {limits.min_vcpus} and {limits.max_vcpus}, got {spec.vcpu_count}",
        )
    if not limits.min_mem_mib <= spec.mem_size_mib <= limits.max_mem_mib:
        out.add(
            "mem_size_mib",
            f"must be between {limits.min_mem_mib} and {limits.max_mem_mib}, "
            f"got {spec.mem_size_mib}",
        )

    if spec.balloon is not None:
        if spec.balloon.amount_mib < 0:
            out.add("balloon.amount_mib", "balloon target must not be negative")
        elif spec.balloon.amount_mib > spec.mem_size_mib:
            out.add(
                "balloon.amount_mib",
                f"balloon target {spec.balloon.amount_mib} exceeds memory {spec.mem_size_mib}",
            )
        if spec.balloon.stats_polling_interval_s < 0:
            out.add("balloon.stats_polling_interval_s", "polling interval must be >= 0")

    resources: set[str] = set()
    for idx, device in enumerate(spec.devices):
        field = f"devices.{idx}.resource"
        resource = device.resource.strip("/")
        if not resource:
            out.add(field, "resource path must not be empty")
        elif resource.split("/", 1)[0] in RESERVED_RESOURCES:
            out.add(field, f"resource '{resource}' is managed by the orchestrator")
        elif resource in resources:
            out.add(field, f"duplicate device resource '{resource}'")
        resources.add(resource)

    iface_ids: set[str] = set()
    host_devs: set[str] = set()
    for idx, iface in enumerate(spec.network_interfaces):
        field = f"network_interfaces.{idx}"
        if not iface.iface_id:
            out.add(f"{field}.iface_id", "interface id must not be empty")
        elif iface.iface_id in iface_ids:
            out.add(f"{field}.iface_id", f"duplicate interface id '{iface.iface_id}'")
        iface_ids.add(iface.iface_id)

        if not MAC_RE.match(iface.guest_mac or ""):
            out.add(f"{field}.guest_mac", f"malformed MAC address '{iface.guest_mac}'")

        if not iface.host_dev_name or not iface.host_dev_name.strip():
            out.add(f"{field}.host_dev_name", "host device name must not be empty")
        elif len(iface.host_dev_name) > IFNAMSIZ:
            out.add(
                f"{field}.host_dev_name",
                f"host device name longer than {IFNAMSIZ} characters",
            )
        elif iface.host_dev_name in host_devs:
            out.add(
                f"{field}.host_dev_name",
                f"duplicate host device '{iface.host_dev_name}'",
            )
        host_devs.add(iface.host_dev_name)

        if iface.host_cidr is not None:
            try:
                ipaddress.IPv4Interface(iface.host_cidr)
            except ValueError:
                out.add(f"{field}.host_cidr", f"invalid IPv4 address '{iface.host_cidr}'")

    out.finish()
