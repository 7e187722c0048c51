from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    # Accept both snake_case and the camelCase keys the JS tooling sends.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class JobSpec(_CamelModel):
    upkeep_contract: str
    name: str
    trigger_type: Literal["interval", "log"]
    gas_limit: int = Field(default=500_000, gt=0)
    check_data: Optional[str] = None

    # log triggers only
    log_emitter_address: Optional[str] = None
    log_event_signature: Optional[str] = None
    log_topic_filters: list[Optional[str]] = Field(default_factory=list)

    @field_validator("trigger_type", mode="before")
    @classmethod
    def _custom_means_interval(cls, v):
        return "interval" if v == "custom" else v


class UnregisterRequest(_CamelModel):
    upkeep_contract: str


class JobHandle(_CamelModel):
    upkeep_contract: str
    name: str
    trigger_type: str
    state: str


class RegisterResponse(BaseModel):
    message: str
    upkeep: JobHandle


class StatusResponse(_CamelModel):
    status: str
    registered_upkeeps: int


class UpkeepListResponse(BaseModel):
    upkeeps: list[JobHandle]
