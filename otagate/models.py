from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .security import validate_platform_id, validate_resource_path, validate_sha256_hex
from .util import parse_semver


class UpdateMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    platform_id: str = Field(alias="platformId")
    version: str
    resource_path: str = Field(alias="resourcePath")
    content_hash: str = Field(alias="contentHash")
    mandatory: bool = False

    @field_validator("platform_id")
    @classmethod
    def _platform(cls, v: str) -> str:
        return validate_platform_id(v)

    @field_validator("version")
    @classmethod
    def _version(cls, v: str) -> str:
        parse_semver(v)
        return v

    @field_validator("resource_path")
    @classmethod
    def _resource_path(cls, v: str) -> str:
        return validate_resource_path(v)

    @field_validator("content_hash")
    @classmethod
    def _content_hash(cls, v: str) -> str:
        return validate_sha256_hex(v)


class UpdateResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    update: bool = True
    version: str
    resource_path: str = Field(alias="resourcePath")
    content_hash: str = Field(alias="contentHash")
    mandatory: bool
    download_token: str = Field(alias="downloadToken")
    download_url: str = Field(alias="downloadUrl")
    expires_at: int = Field(alias="expiresAt")


class NoUpdateResponse(BaseModel):
    update: bool = False


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str
    key_generations: Optional[int] = None
