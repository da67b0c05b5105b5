from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ORCHESTRATOR_", extra="ignore")

    database_url: str = Field(default="sqlite:///./orchestrator.db")
    log_level: str = Field(default="INFO")

    run_dir: str = Field(default="/tmp/vm-orchestrator")
    socket_template: str = Field(default="{run_dir}/{instance_id}.socket")
    request_timeout_sec: float = Field(default=5.0, gt=0)

    launch_vmm: bool = Field(default=False)
    vmm_binary: str = Field(default="firecracker")
    vmm_log_level: str = Field(default="Debug")
    vmm_no_seccomp: bool = Field(default=False)
    vmm_ready_timeout_sec: float = Field(default=5.0, gt=0)
    vmm_stop_grace_sec: float = Field(default=5.0, ge=0)

    min_vcpus: int = Field(default=1, ge=1)
    max_vcpus: int = Field(default=64, ge=1)
    min_mem_mib: int = Field(default=1, ge=1)
    max_mem_mib: int = Field(default=1024 * 1024, ge=1)
    check_paths: bool = Field(default=True)
    collect_all_violations: bool = Field(default=False)

    uplink_interface: str | None = Field(default=None)
    default_tap_cidr: str = Field(default="172.16.0.1/24")
    enable_ip_forward: bool = Field(default=True)
    dry_run: bool = Field(default=False)

    def socket_path_for(self, instance_id: str) -> str:
        return self.socket_template.format(run_dir=self.run_dir, instance_id=instance_id)

    def log_path_for(self, instance_id: str) -> str:
        return str(Path(self.run_dir) / f"{instance_id}.log")

    def ensure_dirs(self) -> None:
        Path(self.run_dir).mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
