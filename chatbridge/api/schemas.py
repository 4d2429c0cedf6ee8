from __future__ import annotations

from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

# Required fields are optional here so handlers can answer with the bridge's own
# 400 messages instead of the generic validation message.
MAX_CREDENTIAL_LENGTH = 1024


class _Body(BaseModel):
    model_config = ConfigDict(extra="ignore")


class LoginRequest(_Body):
    email: Optional[str] = Field(default=None, max_length=320)
    password: Optional[str] = Field(default=None, max_length=MAX_CREDENTIAL_LENGTH)


class RegisterRequest(_Body):
    email: Optional[str] = Field(default=None, max_length=320)
    password: Optional[str] = Field(default=None, max_length=MAX_CREDENTIAL_LENGTH)
    name: Optional[str] = Field(default=None, max_length=256)
    username: Optional[str] = Field(default=None, max_length=256)


class VerifyTwoFactorRequest(_Body):
    token: Optional[str] = Field(default=None, max_length=4096)
    code: Optional[Union[str, int]] = None


class SuspensionRequest(_Body):
    suspended: bool
