"""
Database Schemas for the Video Sharing backend

Each Pydantic model maps to a MongoDB collection. The collection name is the lowercase of the class name.

Collections:
- User -> user
- Video -> video
- Comment -> comment
- Subscription -> subscription
- Like -> like

Request bodies accepted by the JSON endpoints live at the bottom of the module.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic import ValidationError as SchemaError

from errors import ValidationError


class LikeKind(str, Enum):
    VIDEO = "video"
    COMMENT = "comment"


@dataclass(frozen=True)
class LikeTarget:
    """What a like points at: exactly one video or exactly one comment."""

    kind: LikeKind
    id: ObjectId

    @classmethod
    def video(cls, video_id: ObjectId) -> "LikeTarget":
        return cls(LikeKind.VIDEO, video_id)

    @classmethod
    def comment(cls, comment_id: ObjectId) -> "LikeTarget":
        return cls(LikeKind.COMMENT, comment_id)


def _not_blank(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("must not be empty")
    return value


class Document(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, use_enum_values=True)


class User(Document):
    username: str = Field(..., min_length=3, max_length=30)
    email: EmailStr
    fullName: str = Field(..., min_length=1)
    avatar: str = Field(..., description="Public avatar URL")
    coverImage: Optional[str] = None
    password: str = Field(..., description="Bcrypt hash")
    refreshToken: Optional[str] = None

    @field_validator("username", "email", mode="before")
    @classmethod
    def normalize(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class Video(Document):
    owner: ObjectId
    videoFile: str
    thumbnail: str
    title: str = Field(..., min_length=1, max_length=120)
    description: str
    duration: float = Field(..., ge=0)
    views: int = 0
    isPublished: bool = True


class Comment(Document):
    video: ObjectId
    owner: ObjectId
    content: str = Field(..., min_length=1, max_length=1000)

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, v):
        return _not_blank(v)


class Like(Document):
    likedBy: ObjectId
    kind: LikeKind
    target: ObjectId

    @classmethod
    def of(cls, user_id: ObjectId, target: LikeTarget) -> "Like":
        return cls(likedBy=user_id, kind=target.kind, target=target.id)


class Subscription(Document):
    subscriber: ObjectId = Field(..., description="The user following the channel")
    channel: ObjectId = Field(..., description="The user id of the channel being subscribed to")


def build(model, **data):
    """Instantiate `model`, reporting bad input as a 400 instead of a server error."""
    try:
        return model(**data)
    except SchemaError as exc:
        details = [
            {"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]}
            for e in exc.errors()
        ]
        raise ValidationError(details[0]["message"] if details else None, details) from exc


# -------------------- Request bodies --------------------

class RegisterForm(BaseModel):
    fullName: str = Field(..., min_length=1)
    email: EmailStr
    username: str = Field(..., min_length=3, max_length=30)
    password: str = Field(..., min_length=6)

    @field_validator("username", "email", mode="before")
    @classmethod
    def normalize(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class LoginRequest(BaseModel):
    username: Optional[str] = None
    email: Optional[EmailStr] = None
    password: str = Field(..., min_length=1)


class RefreshTokenRequest(BaseModel):
    refreshToken: Optional[str] = None


class ChangePasswordRequest(BaseModel):
    oldPassword: str = Field(..., min_length=1)
    newPassword: str = Field(..., min_length=6)


class UpdateAccountRequest(BaseModel):
    fullName: Optional[str] = None
    email: Optional[EmailStr] = None


class CommentRequest(BaseModel):
    content: str = Field(..., max_length=1000)

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, v):
        return _not_blank(v)
