from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FakeVMMSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="FAKE_VMM_", extra="ignore")

    instance_id: str = Field(default="fake-vmm")
    vmm_version: str = Field(default="fake-1.0.0")
    reject_paths_csv: str = Field(default="")
    reject_status: int = Field(default=400, ge=400, le=599)
    balloon_actual_mib: int = Field(default=0, ge=0)

    @property
    def reject_paths(self) -> set[str]:
        return {x.strip().strip("/") for x in self.reject_paths_csv.split(",") if x.strip()}


@lru_cache(maxsize=1)
def get_settings() -> FakeVMMSettings:
    return FakeVMMSettings()
