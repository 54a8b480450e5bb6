"""Data models for dashboards and render requests."""

from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_core import PydanticCustomError

# Resolved render options; always holds width, height and theme.
RenderOptions = dict[str, str]


class DashboardSpec(BaseModel):
    """Render target for one configured dashboard.

    Zero and empty values fall back to the global settings.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    path: str
    ttl: int = Field(0, ge=0)
    token: str = ""
    org: int = Field(0, ge=0)
    theme: str = ""

    @field_validator("path", mode="before")
    @classmethod
    def validate_path(cls, value: str) -> str:
        if not isinstance(value, str) or not value.strip():
            raise PydanticCustomError(
                "empty_path", "Dashboard path cannot be empty", {"input": value}
            )
        return value.strip()


@dataclass(frozen=True)
class RenderRequest:
    """Decoded identity of one inbound render call."""

    dashboard: str
    panel_id: str
    time_from: str
    time_to: str
    raw_query: str = ""
    options: str = ""
