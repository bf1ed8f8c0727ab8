"""Pydantic schemas for Credential API."""

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from tradeguard.services.credentials import mask


def _clean_url(value: str | None) -> str | None:
    if value is None:
        return None
    url = value.strip()
    if not url:
        return None
    if not (url.startswith("http://") or url.startswith("https://")):
        raise ValueError("must start with http:// or https://")
    return url.rstrip("/")


def _clean_required(value: str) -> str:
    text = value.strip()
    if not text:
        raise ValueError("must not be empty")
    return text


class CredentialCreate(BaseModel):
    name: str = Field(default="default", min_length=1, max_length=120)
    api_key_id: str
    secret: str  # encrypted before storage
    paper: bool = True
    base_url: str | None = None
    is_active: bool = True

    @field_validator("name", "api_key_id", "secret")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        return _clean_required(value)

    @field_validator("base_url")
    @classmethod
    def _validate_url(cls, value: str | None) -> str | None:
        return _clean_url(value)


class CredentialUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    api_key_id: str | None = None
    secret: str | None = None  # If provided, the key pair is rotated
    paper: bool | None = None
    base_url: str | None = None
    is_active: bool | None = None

    @field_validator("name", "api_key_id", "secret")
    @classmethod
    def _not_blank(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return _clean_required(value)

    @field_validator("base_url")
    @classmethod
    def _validate_url(cls, value: str | None) -> str | None:
        return _clean_url(value)


class CredentialRead(BaseModel):
    id: int
    name: str
    api_key_id: str
    paper: bool
    base_url: str | None
    is_active: bool
    created_at: datetime
    # the secret is NEVER exposed

    model_config = {"from_attributes": True}

    @field_validator("api_key_id")
    @classmethod
    def _mask_key_id(cls, value: str) -> str:
        return mask(value)
