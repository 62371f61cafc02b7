from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class UserRegister(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    name: str | None = Field(default=None, max_length=255)


class UserLogin(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)


class UserOut(BaseModel):
    id: int
    email: str
    name: str | None = None

    model_config = ConfigDict(from_attributes=True)


class UserProfile(UserOut):
    created_at: datetime | None = None


class AuthResponse(BaseModel):
    success: bool = True
    token: str
    user: UserOut
