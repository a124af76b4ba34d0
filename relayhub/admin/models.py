from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, SecretStr
from pydantic.alias_generators import to_camel

DEFAULT_TRANSFORMER = "claude"
TRANSFORMERS = ("claude", "openai", "openai2", "gemini")
RESTORE_CHOICES = ("remote", "local", "keep_local")


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Endpoint(_CamelModel):
    """One upstream target the proxy can route to."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    name: str = Field(..., min_length=1, description="Unique endpoint name")
    api_url: str = Field(..., description="Upstream base URL without trailing slash")
    api_key: SecretStr = Field(..., description="Key used for upstream authentication")
    enabled: bool = Field(False, description="Only enabled endpoints can be active")
    transformer: str = Field(DEFAULT_TRANSFORMER, description="Protocol adapter tag")
    model: str = Field("", description="Upstream model, required unless transformer is claude")
    remark: str = ""
    sort_order: int = Field(0, ge=0, description="Display and iteration position")
    created_at: datetime
    updated_at: datetime


class EndpointCreate(_CamelModel):
    name: str = ""
    api_url: str = ""
    api_key: str = ""
    enabled: bool = False
    transformer: str = ""
    model: str = ""
    remark: str = ""


class EndpointUpdate(_CamelModel):
    # None means "leave unchanged"; remark is always overwritten.
    name: Optional[str] = None
    api_url: Optional[str] = None
    api_key: Optional[str] = None
    enabled: Optional[bool] = None
    transformer: Optional[str] = None
    model: Optional[str] = None
    remark: str = ""


class ToggleRequest(_CamelModel):
    enabled: bool


class SwitchRequest(_CamelModel):
    name: str = ""


class ReorderRequest(_CamelModel):
    names: List[str] = Field(default_factory=list)


class FetchModelsRequest(_CamelModel):
    api_url: str = ""
    api_key: str = ""
    transformer: str = ""


class ProxySettings(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    port: int = Field(3000, ge=1, le=65535)
    log_level: Literal["debug", "info", "warning", "error"] = "info"


class SettingsUpdate(_CamelModel):
    port: Optional[int] = Field(None, ge=1, le=65535)
    log_level: Optional[Literal["debug", "info", "warning", "error"]] = None


class ProxyConfig(_CamelModel):
    """Immutable snapshot installed into the proxy runtime in one swap."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    endpoints: Tuple[Endpoint, ...] = ()
    settings: ProxySettings = Field(default_factory=ProxySettings)
    loaded_at: Optional[datetime] = None

    def find(self, name: str) -> Optional[Endpoint]:
        for endpoint in self.endpoints:
            if endpoint.name == name:
                return endpoint
        return None

    def index_of(self, name: str) -> int:
        for index, endpoint in enumerate(self.endpoints):
            if endpoint.name == name:
                return index
        return -1

    def enabled_endpoints(self) -> List[Endpoint]:
        return [endpoint for endpoint in self.endpoints if endpoint.enabled]


class ProbeResult(_CamelModel):
    success: bool
    status: str = ""
    method: str = ""
    message: str = ""


class ModelListResult(_CamelModel):
    success: bool
    message: str = ""
    models: List[str] = Field(default_factory=list)


class TestReport(_CamelModel):
    __test__ = False

    success: bool
    latency: int = Field(..., description="Wall-clock milliseconds around the probe")
    status: str = ""
    method: str = ""
    response: Optional[str] = None
    error: Optional[str] = None


class WebDAVCredentials(_CamelModel):
    url: str
    username: str = ""
    password: SecretStr = SecretStr("")


class WebDAVConfigUpdate(_CamelModel):
    url: str = ""
    username: str = ""
    password: str = ""


class BackupRequest(_CamelModel):
    filename: str = ""


class RestoreRequest(_CamelModel):
    filename: str = ""
    choice: str = ""


class DeleteBackupsRequest(_CamelModel):
    filenames: List[str] = Field(default_factory=list)


class BackupEntry(_CamelModel):
    filename: str
    size: int = 0
    modified: Optional[datetime] = None


class EndpointDiff(_CamelModel):
    name: str
    fields: List[str]


class ConflictReport(_CamelModel):
    filename: str
    has_conflict: bool
    local_modified: Optional[datetime] = None
    remote_modified: Optional[datetime] = None
    conflicts: List[EndpointDiff] = Field(default_factory=list)


class RestoreSummary(_CamelModel):
    filename: str
    choice: str
    added: int = 0
    overwritten: int = 0
    kept: int = 0
