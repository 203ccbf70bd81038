"""Pydantic models for the photos supplied by the photo store."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_URI_PREFERENCE: tuple[str, ...] = ("web", "original", "thumbnail")


class Coordinate(BaseModel):
    """A GPS fix attached to a photo."""

    model_config = ConfigDict(frozen=True)

    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    altitude: float | None = None


class ImageURI(BaseModel):
    """An addressable rendition of a photo, tagged by purpose."""

    model_config = ConfigDict(frozen=True)

    type: Literal["thumbnail", "web", "original"]
    uri: str


class Photo(BaseModel):
    """A photo as read by the pipeline.

    Frozen: the pipeline only ever reads photos.  ``captured_at`` accepts
    ISO strings or epoch seconds.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    captured_at: datetime | None = None
    coordinates: list[Coordinate] = Field(default_factory=list)
    uris: list[ImageURI] = Field(default_factory=list)
    photo_url: str | None = None
    description: str | None = None
    tags: list[str] = Field(default_factory=list)
    project_id: str | None = None
    creator_id: str | None = None

    @field_validator("captured_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        # naive and aware timestamps must stay comparable
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def image_url(
        self, preference: tuple[str, ...] | list[str] = DEFAULT_URI_PREFERENCE
    ) -> str | None:
        """Return the first URI matching *preference*, else ``photo_url``."""
        by_type = {u.type: u.uri for u in self.uris if u.uri}
        for kind in preference:
            if kind in by_type:
                return by_type[kind]
        return self.photo_url or None

    @property
    def primary_coordinate(self) -> Coordinate | None:
        return self.coordinates[0] if self.coordinates else None
