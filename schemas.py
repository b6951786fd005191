"""Pydantic schemas for API request/response validation."""
from pydantic import AliasChoices, BaseModel, Field, ConfigDict, field_validator
from typing import Optional, List, Literal
from datetime import datetime
from models import NovelStatus, UserRole, TranslationJobStatus
from normalizer import split_names


# Request Schemas
class NovelCreate(BaseModel):
    """Fields accepted when creating a novel. Unknown fields are rejected."""
    title: str = Field(..., min_length=1, max_length=500)
    original_title: str = ""
    description: Optional[str] = None
    author: str = "-"
    artist: str = "-"
    categories: List[str] = Field(default_factory=lambda: ["General"])
    status: NovelStatus = NovelStatus.ONGOING
    original_link: str = ""
    image_url: str = ""
    tags: List[str] = Field(default_factory=list)
    custom_prompt: Optional[str] = None
    glossary: str = ""

    model_config = ConfigDict(extra="forbid")

    @field_validator("categories", "tags", mode="before")
    @classmethod
    def _split_names(cls, value):
        return split_names(value)

    @field_validator("categories")
    @classmethod
    def _default_category(cls, value):
        return value or ["General"]


class NovelUpdate(BaseModel):
    """Partial novel update. Only the supplied fields change."""
    title: Optional[str] = Field(None, min_length=1, max_length=500)
    original_title: Optional[str] = None
    description: Optional[str] = None
    author: Optional[str] = None
    artist: Optional[str] = None
    categories: Optional[List[str]] = None
    status: Optional[NovelStatus] = None
    original_link: Optional[str] = None
    image_url: Optional[str] = None
    tags: Optional[List[str]] = None
    custom_prompt: Optional[str] = None
    glossary: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("categories", "tags", mode="before")
    @classmethod
    def _split_names(cls, value):
        if value is None:
            return None
        return split_names(value)


class ChapterIngestRequest(BaseModel):
    """Form fields of a chapter submission."""
    mode: Literal["manual", "auto"] = "auto"
    raw_text: Optional[str] = None
    manual_title: Optional[str] = None
    manual_chapter_number: Optional[float] = Field(None, allow_inf_nan=False)
    manual_translated: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("raw_text", "manual_title", "manual_translated", "manual_chapter_number", mode="before")
    @classmethod
    def _blank_is_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class ChapterUpdate(BaseModel):
    """Editable chapter fields."""
    title: Optional[str] = Field(None, min_length=1, max_length=500)
    chapter_number: Optional[float] = Field(None, allow_inf_nan=False)
    original_content: Optional[str] = None
    translated_content: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class SnippetRequest(BaseModel):
    """Short passage to translate with a novel's style and glossary."""
    text: str = Field(..., min_length=1)

    model_config = ConfigDict(extra="forbid")


class CommentCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=5000)

    model_config = ConfigDict(extra="forbid")


class Credentials(BaseModel):
    """Login/registration body."""
    username: str = Field(..., min_length=3, max_length=100)
    password: str = Field(..., min_length=4, max_length=200)

    model_config = ConfigDict(extra="forbid")


# Response Schemas
class LastChapterSchema(BaseModel):
    chapter_number: float
    title: Optional[str] = None
    updated_at: Optional[datetime] = None


class NovelListItem(BaseModel):
    """Novel list item for paginated responses."""
    id: int
    title: str
    original_title: str
    author: str
    status: NovelStatus
    image_url: str
    views: int
    categories: List[str] = Field(default_factory=list, validation_alias=AliasChoices("category_names", "categories"))
    tags: List[str] = Field(default_factory=list, validation_alias=AliasChoices("tag_names", "tags"))
    created_at: datetime
    updated_at: datetime
    last_chapter: Optional[LastChapterSchema] = None

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_novel(cls, novel):
        item = cls.model_validate(novel)
        if novel.last_chapter_number is not None:
            item.last_chapter = LastChapterSchema(
                chapter_number=novel.last_chapter_number,
                title=novel.last_chapter_title,
                updated_at=novel.last_chapter_at,
            )
        return item


class NovelDetail(NovelListItem):
    """Detailed novel information."""
    description: Optional[str] = None
    artist: str
    original_link: str
    custom_prompt: str
    glossary: str


class ChapterListItem(BaseModel):
    """Chapter list item."""
    id: int
    chapter_number: float
    title: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ChapterDetail(BaseModel):
    """Detailed chapter information with content."""
    id: int
    novel_id: int
    chapter_number: float
    title: str
    original_content: Optional[str] = None
    translated_content: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class NovelListResponse(BaseModel):
    """Paginated novel list response."""
    items: List[NovelListItem]
    total: int
    page: int
    page_size: int
    total_pages: int
    recommended: Optional[NovelListItem] = None


class ChapterListResponse(BaseModel):
    """Paginated chapter list for one novel."""
    items: List[ChapterListItem]
    total: int
    total_chapters: int
    page: int
    page_size: int
    total_pages: int
    sort: Literal["asc", "desc"]


class NovelPageResponse(BaseModel):
    """Novel detail with one page of its chapters."""
    novel: NovelDetail
    chapters: ChapterListResponse
    is_favorite: bool = False


class ChapterReadResponse(BaseModel):
    """Chapter with reader navigation."""
    chapter: ChapterDetail
    novel: NovelListItem
    prev_chapter: Optional[ChapterListItem] = None
    next_chapter: Optional[ChapterListItem] = None
    all_chapters: List[ChapterListItem]


class IngestionResult(BaseModel):
    """Structured ingestion outcome for programmatic callers."""
    success: bool
    message: str
    chapter: Optional[ChapterDetail] = None


class FavoriteToggleResponse(BaseModel):
    success: bool = True
    is_favorite: bool


class SnippetResponse(BaseModel):
    translated_text: str


class CommentSchema(BaseModel):
    id: int
    novel_id: int
    username: str
    content: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UserSchema(BaseModel):
    id: int
    username: str
    role: UserRole

    model_config = ConfigDict(from_attributes=True)


class TranslationJobResponse(BaseModel):
    """Job status response."""
    id: int
    novel_id: int
    status: TranslationJobStatus
    error_message: Optional[str] = None
    chapter_id: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class NameListResponse(BaseModel):
    """Distinct category or tag names."""
    items: List[str]
    total: int
