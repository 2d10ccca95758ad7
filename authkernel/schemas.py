from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from authkernel.service.errors import ValidationError
from authkernel.storage.models import normalize_email

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
MAX_TOKEN_LENGTH = 4096

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")

ModelT = TypeVar("ModelT", bound=BaseModel)


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = normalize_email(value)
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"password must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValueError(f"password must be at most {PASSWORD_MAX_LENGTH} characters")
    return value


def parse_input(model: Type[ModelT], **data: Any) -> ModelT:
    """Validate raw operation arguments, raising the service-level error."""
    try:
        return model(**data)
    except PydanticValidationError as exc:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
        messages = [err["msg"] for err in exc.errors()]
        raise ValidationError(
            "Invalid input", detail={"fields": fields, "errors": messages}
        ) from exc


class SignupInput(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginInput(BaseModel):
    email: str
    # existing accounts may predate the length rules, so only bound the size
    password: str = Field(..., min_length=1, max_length=PASSWORD_MAX_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class EmailInput(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_plain_email(cls, value: str) -> str:
        return _validate_email(value)


class CodeInput(BaseModel):
    code: str = Field(..., min_length=1, max_length=16)

    @field_validator("code")
    @classmethod
    def _strip_code(cls, value: str) -> str:
        return value.strip()


class TokenInput(BaseModel):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class ChangePasswordInput(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=PASSWORD_MAX_LENGTH)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ResetPasswordInput(BaseModel):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class MessageResponse(BaseModel):
    """Fixed acknowledgement returned by enumeration-sensitive operations."""

    model_config = ConfigDict(frozen=True)

    message: str


class SessionView(BaseModel):
    """Public projection of a session; never includes token hashes."""

    id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    current: bool = False


class ResetTokenResponse(BaseModel):
    reset_token: str
    token_type: str = "password_reset"
    expires_in: int


class OAuthStartResponse(BaseModel):
    authorization_url: str
    state: str
