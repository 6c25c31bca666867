from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RegisterRequest(_Request):
    username: str = Field(max_length=64)
    name: str = Field(max_length=200)
    email: str = Field(max_length=255)
    password: str = Field(max_length=256)


class VerifyOtpRequest(_Request):
    email: str = Field(max_length=255)
    otp: str = Field(max_length=16)


class EmailRequest(_Request):
    email: str = Field(max_length=255)


class LoginRequest(_Request):
    email: str = Field(max_length=255)
    password: str = Field(max_length=256)


class AdminLoginRequest(LoginRequest):
    admin_key: str = Field(alias="adminKey", max_length=256)


class OAuthCodeRequest(_Request):
    code: str = Field(max_length=2048)


class ResetPasswordRequest(_Request):
    email: str = Field(max_length=255)
    token: str = Field(max_length=256)
    new_password: str = Field(alias="newPassword", max_length=256)


class ChangePasswordRequest(_Request):
    current_password: str = Field(alias="currentPassword", max_length=256)
    new_password: str = Field(alias="newPassword", max_length=256)


class UpdateProfileRequest(_Request):
    name: str = Field(max_length=200)
    email: str = Field(max_length=255)


class ResetTokenRequest(_Request):
    email: str = Field(max_length=255)
    token: str = Field(max_length=256)


class AdminOtpRequest(_Request):
    email: str = Field(max_length=255)
    otp: str = Field(max_length=16)


class AdminOtpResetRequest(AdminOtpRequest):
    new_password: str = Field(alias="newPassword", max_length=256)
