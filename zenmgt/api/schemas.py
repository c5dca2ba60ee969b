from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from zenmgt.service.proxy import ALLOWED_METHODS


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null


class Envelope(BaseModel):
    """Envelope for console (non-proxy) responses."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class LoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    username: str = Field(..., min_length=1, max_length=128)
    password: str = Field(..., min_length=1, max_length=256)
    mfa_code: Optional[str] = Field(None, alias="mfaCode", max_length=6)

    @field_validator("username")
    @classmethod
    def _strip_username(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("username is required")
        return value

    @field_validator("mfa_code")
    @classmethod
    def _blank_code_is_none(cls, value: Optional[str]) -> Optional[str]:
        value = (value or "").strip()
        return value or None


class CheckUserRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=128)


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=128)
    password: str = Field(..., min_length=1, max_length=256)
    email: Optional[str] = Field(None, max_length=254, pattern=r"^[^@\s]+@[^@\s]+$")

    @field_validator("username")
    @classmethod
    def _strip_username(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("username is required")
        return value


class MfaSetupRequest(BaseModel):
    """``initiate`` starts enrollment; ``enable`` confirms it with a code and password."""

    model_config = ConfigDict(populate_by_name=True)

    action: Literal["initiate", "enable"]
    mfa_code: Optional[str] = Field(None, alias="mfaCode", pattern=r"^\d{6}$")
    password: Optional[str] = Field(None, max_length=256)

    @model_validator(mode="after")
    def _enable_needs_code_and_password(self) -> "MfaSetupRequest":
        if self.action == "enable" and (not self.mfa_code or not self.password):
            raise ValueError("mfaCode and password are required to enable MFA")
        return self


class MfaVerifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    mfa_code: str = Field(..., alias="mfaCode", pattern=r"^\d{6}$")


class AuthStateResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    state: str
    next: Optional[str] = None
    recovery_codes: Optional[List[str]] = Field(None, alias="recoveryCodes")


class MfaSetupResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    state: str
    qr_code_url: Optional[str] = Field(None, alias="qrCodeUrl")
    secret: Optional[str] = None
    backup_codes: List[str] = Field(default_factory=list, alias="backupCodes")


class ProxyBody(BaseModel):
    endpoint: str = Field(..., min_length=1, max_length=512)
    method: str = Field("GET", max_length=10)
    data: Optional[Dict[str, Any]] = None
    params: Optional[Dict[str, Any]] = None

    @field_validator("endpoint")
    @classmethod
    def _relative_endpoint(cls, value: str) -> str:
        value = value.strip()
        if (
            not value.startswith("/")
            or value.startswith("//")
            or "://" in value
            or ".." in value
            or "." in value.split("/")
        ):
            raise ValueError("endpoint must be a relative API path")
        return value

    @field_validator("method")
    @classmethod
    def _known_method(cls, value: str) -> str:
        value = (value or "GET").strip().upper()
        if value not in ALLOWED_METHODS:
            raise ValueError(f"method must be one of {sorted(ALLOWED_METHODS)}")
        return value

    @field_validator("params")
    @classmethod
    def _stringify_params(cls, value: Optional[Dict[str, Any]]) -> Optional[Dict[str, str]]:
        if value is None:
            return None
        return {str(k): str(v) for k, v in value.items() if v is not None}


class PageData(BaseModel):
    section: str
    user_id: str
    username: Optional[str] = None
    data: Optional[Any] = None
