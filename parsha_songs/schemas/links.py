from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from parsha_songs.core.sanitize import (
    ADDED_BY_MAX_LENGTH,
    REFERENCE_ID_RE,
    TITLE_MAX_LENGTH,
    URL_MAX_LENGTH,
    VERSE_REF_MAX_LENGTH,
    clean_song_url,
    clean_title,
)

TargetKind = Literal["parasha", "haftarah", "tanach"]
LinkStatus = Literal["pending", "approved", "rejected"]


class SongIn(BaseModel):
    title: str = Field(min_length=1, max_length=TITLE_MAX_LENGTH)
    external_url: str | None = Field(default=None, max_length=URL_MAX_LENGTH)

    @field_validator("title")
    @classmethod
    def _clean_title(cls, value: str) -> str:
        cleaned = clean_title(value)
        if not cleaned:
            raise ValueError("title required")
        return cleaned

    @field_validator("external_url")
    @classmethod
    def _clean_url(cls, value: str | None) -> str | None:
        return clean_song_url(value)


class LinkCreateRequest(BaseModel):
    target_kind: TargetKind
    parasha_id: str | None = None
    target_id: str | None = None
    book_id: str | None = None
    chapter: int | None = Field(default=None, ge=1, le=200)
    song: SongIn
    verse_ref: str | None = Field(default=None, max_length=VERSE_REF_MAX_LENGTH)
    added_by: str | None = Field(default=None, max_length=ADDED_BY_MAX_LENGTH)

    @field_validator("parasha_id", "target_id", "book_id")
    @classmethod
    def _check_reference_id(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        if not REFERENCE_ID_RE.match(stripped):
            raise ValueError("invalid reference id")
        return stripped

    @model_validator(mode="after")
    def _check_target_shape(self) -> "LinkCreateRequest":
        if self.target_kind == "tanach":
            if not self.book_id or self.chapter is None:
                raise ValueError("tanach links require book_id and chapter")
        elif not self.parasha_id:
            raise ValueError("parasha_id is required")
        if self.target_kind == "haftarah" and not self.target_id:
            raise ValueError("haftarah links require target_id")
        return self


class LinkCreatedOut(BaseModel):
    id: int
    status: LinkStatus


class LinkOut(BaseModel):
    id: int
    parasha_id: str
    target_kind: str
    target_id: str | None = None
    song_id: str
    verse_ref: str | None = None
    added_by: str | None = None
    status: str
    approved_at: datetime | None = None
    added_at: datetime
    song_title: str
    song_url: str | None = None


class SongRelinkRequest(BaseModel):
    external_url: str | None = Field(default=None, max_length=URL_MAX_LENGTH)


class SongOut(BaseModel):
    id: str
    title: str
    external_url: str | None = None
