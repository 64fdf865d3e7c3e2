from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator

from ..common.enums import CommentLocation, MediaType
from .base_document_spec import FlexibleDocument, normalize_timestamp, serialize_timestamp
from .comment_document_spec import Comment


class MediaItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: MediaType = Field(..., description="Kind of media attached to the post")
    url: str = Field(..., description="Location of the media file")
    width: Optional[int] = Field(None, ge=1, description="Pixel width for images and video")
    height: Optional[int] = Field(None, ge=1, description="Pixel height for images and video")
    durationSeconds: Optional[float] = Field(None, ge=0, description="Playback length for video and audio")


class GeoPoint(BaseModel):
    """GeoJSON point; coordinates are ``[longitude, latitude]``."""

    type: Literal["Point"] = "Point"
    coordinates: List[float] = Field(..., min_length=2, max_length=2)

    @field_validator("coordinates")
    @classmethod
    def _check_range(cls, value: List[float]) -> List[float]:
        lng, lat = value
        if not -180 <= lng <= 180 or not -90 <= lat <= 90:
            raise ValueError("coordinates must be [longitude, latitude] within range")
        return value

    @property
    def longitude(self) -> float:
        return self.coordinates[0]

    @property
    def latitude(self) -> float:
        return self.coordinates[1]


class Post(FlexibleDocument):
    id: Optional[str] = Field(None, description="Post id; generated on create when omitted")
    authorId: str = Field(..., description="Soft reference to the external user identity")
    caption: str = Field("", description="Free text caption")
    tags: List[str] = Field(default_factory=list, description="Ordered tags; duplicates allowed")
    media: List[MediaItem] = Field(default_factory=list, description="Ordered media attachments")
    location: Optional[GeoPoint] = Field(None, description="Optional geo point")
    embeddedComments: List[Comment] = Field(default_factory=list, description="Inline comments, oldest first")
    commentsCount: int = Field(0, ge=0, description="Embedded plus overflow comment total")
    likedBy: List[str] = Field(default_factory=list, description="User ids that liked the post")
    likesCount: int = Field(0, ge=0, description="Number of distinct likers")
    createdAt: Optional[datetime] = Field(None, description="Creation time; assigned on create")
    ttlAt: Optional[datetime] = Field(None, description="Expiry time for ephemeral story posts")

    @field_validator("createdAt", "ttlAt")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return normalize_timestamp(value)

    @field_serializer("createdAt", "ttlAt")
    def _ser_timestamps(self, value: Optional[datetime]) -> Optional[str]:
        return serialize_timestamp(value)

    @model_validator(mode="after")
    def _mark_embedded(self) -> "Post":
        for comment in self.embeddedComments:
            comment.location = CommentLocation.EMBEDDED
            if comment.postId is None:
                comment.postId = self.id
        return self

    def to_document(self) -> Dict[str, Any]:
        doc = super().to_document()
        doc["embeddedComments"] = [c.to_document() for c in self.embeddedComments]
        if self.location is None:
            doc.pop("location", None)
        if self.ttlAt is None:
            doc.pop("ttlAt", None)
        return doc
