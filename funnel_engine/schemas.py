from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from funnel_engine.enums import (
    DeficiencyEnum,
    OriginKindEnum,
    ReadinessStateEnum,
    SignalKindEnum,
    ValueCategoryEnum,
)


def _validate_link(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = value.strip()
    if not cleaned:
        return None
    parsed = urlparse(cleaned)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("link must be an http(s) URL.")
    return cleaned


def _optional_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None


class ResourceFields(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str
    link: Optional[str] = None
    origin_kind: OriginKindEnum = Field(
        default=OriginKindEnum.AFFILIATE,
        validation_alias="originKind",
        serialization_alias="originKind",
    )
    value_category: ValueCategoryEnum = Field(
        default=ValueCategoryEnum.FREE,
        validation_alias="valueCategory",
        serialization_alias="valueCategory",
    )
    promo_code: Optional[str] = Field(
        default=None,
        validation_alias="promoCode",
        serialization_alias="promoCode",
    )
    description: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("name must not be blank.")
        return cleaned

    @field_validator("link")
    @classmethod
    def _validate_link(cls, value: Optional[str]) -> Optional[str]:
        return _validate_link(value)

    @field_validator("promo_code", "description")
    @classmethod
    def _validate_optional_text(cls, value: Optional[str]) -> Optional[str]:
        return _optional_text(value)

    @model_validator(mode="after")
    def _validate_affiliate_link(self):
        if self.origin_kind == OriginKindEnum.AFFILIATE and not self.link:
            raise ValueError("link is required for affiliate resources.")
        return self


class ResourceDraft(ResourceFields):
    """Fields supplied when creating a resource; the id is assigned by the store."""


class Resource(ResourceFields):
    id: str = Field(min_length=1)


class ResourcePatch(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    link: Optional[str] = None
    origin_kind: Optional[OriginKindEnum] = Field(
        default=None,
        validation_alias="originKind",
        serialization_alias="originKind",
    )
    value_category: Optional[ValueCategoryEnum] = Field(
        default=None,
        validation_alias="valueCategory",
        serialization_alias="valueCategory",
    )
    promo_code: Optional[str] = Field(
        default=None,
        validation_alias="promoCode",
        serialization_alias="promoCode",
    )
    description: Optional[str] = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)

    def apply_to(self, resource: Resource) -> Resource:
        merged = {**resource.model_dump(), **self.changes()}
        return Resource.model_validate(merged)


class Funnel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(min_length=1)
    name: str
    resource_ids: list[str] = Field(
        default_factory=list,
        validation_alias="resourceIds",
        serialization_alias="resourceIds",
    )
    generated_flow: Optional[dict[str, Any]] = Field(
        default=None,
        validation_alias="generatedFlow",
        serialization_alias="generatedFlow",
    )
    is_deployed: bool = Field(
        default=False,
        validation_alias="isDeployed",
        serialization_alias="isDeployed",
    )

    @field_validator("resource_ids")
    @classmethod
    def _validate_resource_ids(cls, value: list[str]) -> list[str]:
        if len(set(value)) != len(value):
            raise ValueError("resourceIds must not contain duplicates.")
        return value

    @property
    def is_generated(self) -> bool:
        return bool(self.generated_flow)


class FunnelView(BaseModel):
    """A funnel together with snapshots of its assigned resources."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    funnel: Funnel
    resources: list[Resource] = Field(default_factory=list)

    @property
    def id(self) -> str:
        return self.funnel.id

    @property
    def name(self) -> str:
        return self.funnel.name

    def count(self, category: ValueCategoryEnum) -> int:
        return sum(1 for resource in self.resources if resource.value_category == category)

    def has_resource(self, resource_id: str) -> bool:
        return resource_id in self.funnel.resource_ids


class NameAvailabilityResponse(BaseModel):
    name: str
    available: bool


class BulkDeleteRequest(BaseModel):
    resourceIds: list[str] = Field(min_length=1)


class BulkDeleteResponse(BaseModel):
    deleted: int


class FunnelRegisterRequest(BaseModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    resourceIds: list[str] = Field(default_factory=list)
    generatedFlow: Optional[dict[str, Any]] = None
    isDeployed: bool = False


class CanAssignResponse(BaseModel):
    funnelId: str
    resourceId: str
    canAssign: bool
    blockedBy: Optional[str] = None


class ReadinessResponse(BaseModel):
    funnelId: str
    state: ReadinessStateEnum
    deficiencies: list[DeficiencyEnum]
    assignedCount: int
    freeCount: int
    paidCount: int
    isLocked: bool
    highlightedResourceIds: list[str]


class FunnelResponse(BaseModel):
    id: str
    name: str
    resources: list[dict[str, Any]]
    generatedFlow: Optional[dict[str, Any]] = None
    isDeployed: bool
    readiness: ReadinessResponse


class FeedbackSignalResponse(BaseModel):
    kind: SignalKindEnum
    succeeded: bool
    resource: dict[str, Any]
    funnelId: Optional[str] = None
    errorKind: Optional[str] = None
    message: str
    createdAt: datetime
    expiresAt: datetime
