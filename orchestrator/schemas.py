from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


DEFAULT_BOOT_ARGS = "console=ttyS0 reboot=k panic=1 pci=off"


class _FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class DriveSpec(_FrozenModel):
    drive_id: str = Field(validation_alias=AliasChoices("drive_id", "id"))
    path_on_host: str = Field(validation_alias=AliasChoices("path_on_host", "path"))
    is_read_only: bool = Field(
        default=False, validation_alias=AliasChoices("is_read_only", "read_only")
    )


class BalloonSpec(_FrozenModel):
    amount_mib: int = Field(default=0, validation_alias=AliasChoices("amount_mib", "target"))
    deflate_on_oom: bool = Field(
        default=False, validation_alias=AliasChoices("deflate_on_oom", "deflate")
    )
    stats_polling_interval_s: int = Field(
        default=0, validation_alias=AliasChoices("stats_polling_interval_s", "poll")
    )


class DeviceExtensionSpec(_FrozenModel):
    resource: str
    payload: dict[str, Any] = Field(default_factory=dict)


class NetworkInterfaceSpec(_FrozenModel):
    iface_id: str = Field(validation_alias=AliasChoices("iface_id", "id"))
    guest_mac: str = Field(validation_alias=AliasChoices("guest_mac", "mac"))
    host_dev_name: str = Field(validation_alias=AliasChoices("host_dev_name", "dev"))
    host_cidr: str | None = None


class InstanceSpec(_FrozenModel):
    kernel_image_path: str = Field(
        validation_alias=AliasChoices("kernel_image_path", "kernel")
    )
    boot_args: str = DEFAULT_BOOT_ARGS
    rootfs_path: str = Field(validation_alias=AliasChoices("rootfs_path", "rootfs"))
    rootfs_read_only: bool = Field(
        default=False, validation_alias=AliasChoices("rootfs_read_only", "read_only")
    )
    extra_drives: tuple[DriveSpec, ...] = ()
    vcpu_count: int = Field(validation_alias=AliasChoices("vcpu_count", "vcpus"))
    mem_size_mib: int = Field(validation_alias=AliasChoices("mem_size_mib", "mem_mib"))
    balloon: BalloonSpec | None = None
    devices: tuple[DeviceExtensionSpec, ...] = ()
    network_interfaces: tuple[NetworkInterfaceSpec, ...] = Field(
        default=(), validation_alias=AliasChoices("network_interfaces", "ifaces")
    )


class LaunchRequest(BaseModel):
    instance_id: str = Field(min_length=1, max_length=64)
    spec: dict[str, Any]
    vmm_socket_path: str | None = None


class BalloonUpdateRequest(BaseModel):
    amount_mib: int = Field(ge=0)


class StepRead(BaseModel):
    name: str
    method: str
    resource_path: str
    status_code: int | None
    ok: bool
    error: str | None = None


class InstanceRead(BaseModel):
    instance_id: str
    phase: str
    last_error: str | None
    steps: list[StepRead]
    release_errors: list[str] = Field(default_factory=list)


class EventRead(BaseModel):
    id: int
    timestamp: datetime
    instance_id: str | None
    event_type: str
    payload_json: str
