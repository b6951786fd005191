"""Database models for the novel library."""
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, Float, String, Text, DateTime, Enum,
    ForeignKey, Index, Table
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from config import settings
from database import Base
import enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NovelStatus(str, enum.Enum):
    """Novel publication status."""
    ONGOING = "ongoing"
    COMPLETED = "completed"
    HIATUS = "hiatus"


class UserRole(str, enum.Enum):
    """Write-capability tiers, lowest first."""
    READER = "reader"
    WRITER = "writer"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return list(UserRole).index(self)

    def allows(self, required: "UserRole") -> bool:
        return self.rank >= required.rank


class TranslationJobStatus(str, enum.Enum):
    """Background translation job states."""
    QUEUED = "queued"
    TRANSLATING = "translating"
    DONE = "done"
    ERROR = "error"


# Many-to-many association tables
novel_categories = Table(
    'novel_categories',
    Base.metadata,
    Column('novel_id', Integer, ForeignKey('novels.id', ondelete='CASCADE'), primary_key=True),
    Column('category_id', Integer, ForeignKey('categories.id', ondelete='CASCADE'), primary_key=True),
    Index('ix_novel_categories_category_id', 'category_id'),
)

novel_tags = Table(
    'novel_tags',
    Base.metadata,
    Column('novel_id', Integer, ForeignKey('novels.id', ondelete='CASCADE'), primary_key=True),
    Column('tag_id', Integer, ForeignKey('tags.id', ondelete='CASCADE'), primary_key=True),
    Index('ix_novel_tags_tag_id', 'tag_id'),
)

user_favorites = Table(
    'user_favorites',
    Base.metadata,
    Column('user_id', Integer, ForeignKey('users.id', ondelete='CASCADE'), primary_key=True),
    Column('novel_id', Integer, ForeignKey('novels.id', ondelete='CASCADE'), primary_key=True),
    Index('ix_user_favorites_novel_id', 'novel_id'),
)


class Novel(Base):
    """Novel model - a serialized work made of numbered chapters."""
    __tablename__ = 'novels'

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(500), nullable=False, index=True)
    original_title = Column(String(500), default="", nullable=False)
    description = Column(Text, nullable=True)
    author = Column(String(255), default="-", nullable=False)
    artist = Column(String(255), default="-", nullable=False)
    status = Column(Enum(NovelStatus), default=NovelStatus.ONGOING, nullable=False, index=True)
    original_link = Column(String(1000), default="", nullable=False)
    image_url = Column(String(1000), default="", nullable=False)
    views = Column(Integer, default=0, nullable=False)
    custom_prompt = Column(Text, default=settings.default_custom_prompt, nullable=False)
    glossary = Column(Text, default="", nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    # Only chapter ingestion moves this forward; view counting must not touch it.
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False, index=True)

    # Denormalized latest chapter summary
    last_chapter_number = Column(Float, nullable=True)
    last_chapter_title = Column(String(500), nullable=True)
    last_chapter_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    chapters = relationship("Chapter", back_populates="novel", passive_deletes=True)
    categories = relationship("Category", secondary=novel_categories, back_populates="novels", lazy="selectin")
    tags = relationship("Tag", secondary=novel_tags, back_populates="novels", lazy="selectin")
    favorited_by = relationship("User", secondary=user_favorites, back_populates="favorites")

    @property
    def category_names(self) -> list[str]:
        return sorted(c.name for c in self.categories)

    @property
    def tag_names(self) -> list[str]:
        return sorted(t.name for t in self.tags)

    def __repr__(self):
        return f"<Novel(id={self.id}, title='{self.title}')>"


class Chapter(Base):
    """Chapter model. Numbers are floats so that 1.5 can sit between 1 and 2."""
    __tablename__ = 'chapters'

    id = Column(Integer, primary_key=True, index=True)
    novel_id = Column(Integer, ForeignKey('novels.id', ondelete='CASCADE'), nullable=False, index=True)
    chapter_number = Column(Float, nullable=False, default=0)
    title = Column(String(500), nullable=False, index=True)
    original_content = Column(Text, nullable=True)
    translated_content = Column(Text, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    novel = relationship("Novel", back_populates="chapters")

    # Not unique: duplicate numbers within a novel are tolerated
    __table_args__ = (
        Index('ix_chapters_novel_chapter', 'novel_id', 'chapter_number'),
    )

    def __repr__(self):
        return f"<Chapter(id={self.id}, novel_id={self.novel_id}, number={self.chapter_number})>"


class Category(Base):
    """Category model."""
    __tablename__ = 'categories'

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False, unique=True, index=True)

    novels = relationship("Novel", secondary=novel_categories, back_populates="categories")

    def __repr__(self):
        return f"<Category(id={self.id}, name='{self.name}')>"


class Tag(Base):
    """Tag model."""
    __tablename__ = 'tags'

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False, unique=True, index=True)

    novels = relationship("Novel", secondary=novel_tags, back_populates="tags")

    def __repr__(self):
        return f"<Tag(id={self.id}, name='{self.name}')>"


class User(Base):
    """Account with a role and a set of favorite novels."""
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(100), nullable=False, unique=True, index=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(Enum(UserRole), default=UserRole.READER, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    favorites = relationship("Novel", secondary=user_favorites, back_populates="favorited_by")

    def __repr__(self):
        return f"<User(id={self.id}, username='{self.username}', role='{self.role}')>"


class Comment(Base):
    """Reader comment on a novel."""
    __tablename__ = 'comments'

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    novel_id = Column(Integer, ForeignKey('novels.id', ondelete='CASCADE'), nullable=False, index=True)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    user = relationship("User", lazy="joined")

    @property
    def username(self) -> str:
        return self.user.username if self.user else ""


class TranslationJob(Base):
    """Background auto-translation job tracking."""
    __tablename__ = 'translation_jobs'

    id = Column(Integer, primary_key=True, index=True)
    novel_id = Column(Integer, ForeignKey('novels.id', ondelete='CASCADE'), nullable=False, index=True)
    status = Column(Enum(TranslationJobStatus), default=TranslationJobStatus.QUEUED, nullable=False, index=True)
    source_text = Column(Text, nullable=False)
    error_message = Column(Text, nullable=True)
    chapter_id = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<TranslationJob(id={self.id}, status='{self.status}', novel_id={self.novel_id})>"
