"""Catalog queries: novel listing, chapter listing and novel mutations."""
import logging
import random
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import select, func, update, delete, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from accounts import RequestContext
from config import settings
from errors import NotFound, PersistenceFailed
from models import (
    Novel, Chapter, Category, Tag, Comment, TranslationJob, NovelStatus,
    novel_categories, novel_tags, user_favorites,
)
from schemas import NovelCreate, NovelUpdate

logger = logging.getLogger(__name__)

# Ties are broken by id so that pages never overlap
NOVEL_SORTS = {
    "updated": (Novel.updated_at.desc(), Novel.id.desc()),
    "oldest": (Novel.updated_at.asc(), Novel.id.asc()),
    "views": (Novel.views.desc(), Novel.id.desc()),
    "title": (Novel.title.asc(), Novel.id.asc()),
}

CHAPTER_SORTS = {
    "asc": (Chapter.chapter_number.asc(), Chapter.id.asc()),
    "desc": (Chapter.chapter_number.desc(), Chapter.id.desc()),
}


def count_pages(total: int, page_size: int) -> int:
    return (total + page_size - 1) // page_size


@dataclass
class NovelFilters:
    """Optional, AND-combined novel filters."""
    q: Optional[str] = None
    category: Optional[str] = None
    status: Optional[NovelStatus] = None
    tags: List[str] = field(default_factory=list)

    @property
    def active(self) -> bool:
        return bool(self.q or self.category or self.status or self.tags)

    def clauses(self) -> list:
        clauses = []
        if self.q:
            clauses.append(Novel.title.icontains(self.q, autoescape=True))
        if self.category:
            clauses.append(Novel.categories.any(Category.name == self.category))
        if self.status:
            clauses.append(Novel.status == self.status)
        # Every selected tag must be present
        for tag in self.tags:
            clauses.append(Novel.tags.any(Tag.name == tag))
        return clauses


@dataclass
class Page:
    items: list
    total: int
    page: int
    page_size: int
    total_pages: int


@dataclass
class ChapterPage(Page):
    total_chapters: int = 0
    sort: str = "desc"


@dataclass
class ChapterNavigation:
    prev_chapter: Optional[Chapter]
    next_chapter: Optional[Chapter]
    all_chapters: List[Chapter]


class Catalog:
    """Read and write access to novels for the HTTP layer."""

    def __init__(
        self,
        db: AsyncSession,
        novel_page_size: Optional[int] = None,
        chapter_page_size: Optional[int] = None,
        rng: Optional[random.Random] = None,
    ):
        self.db = db
        self.novel_page_size = novel_page_size or settings.novel_page_size
        self.chapter_page_size = chapter_page_size or settings.chapter_page_size
        self.rng = rng or random.Random()

    # ------------------------------------------------------------------
    # Novels
    # ------------------------------------------------------------------

    async def get_novel(self, novel_id: int) -> Novel:
        novel = await self.db.get(Novel, novel_id)
        if novel is None:
            raise NotFound("Novel", novel_id)
        return novel

    async def list_novels(self, filters: NovelFilters, sort: str = "updated", page: int = 1) -> Page:
        """One page of novels matching the filters."""
        page = max(page, 1)
        clauses = filters.clauses()

        total = await self.db.scalar(select(func.count(Novel.id)).where(*clauses))

        offset = (page - 1) * self.novel_page_size
        result = await self.db.execute(
            select(Novel)
            .where(*clauses)
            .order_by(*NOVEL_SORTS.get(sort, NOVEL_SORTS["updated"]))
            .offset(offset)
            .limit(self.novel_page_size)
        )
        novels = result.scalars().all()

        return Page(
            items=list(novels),
            total=total,
            page=page,
            page_size=self.novel_page_size,
            total_pages=count_pages(total, self.novel_page_size),
        )

    async def recommended(self, filters: NovelFilters, page: int = 1) -> Optional[Novel]:
        """
        Pick a random novel for the landing page.

        Only offered on an unfiltered first page. Novels with a cover are
        preferred; any novel is picked when none has one.
        """
        if filters.active or page != 1:
            return None

        novel = await self._random_novel(Novel.image_url != "")
        if novel is None:
            novel = await self._random_novel()
        return novel

    async def _random_novel(self, *clauses) -> Optional[Novel]:
        count = await self.db.scalar(select(func.count(Novel.id)).where(*clauses))
        if not count:
            return None
        offset = self.rng.randrange(count)
        result = await self.db.execute(
            select(Novel).where(*clauses).order_by(Novel.id).offset(offset).limit(1)
        )
        return result.scalar_one_or_none()

    async def random_novel_id(self) -> Optional[int]:
        novel = await self._random_novel()
        return novel.id if novel else None

    async def top_novels(self, limit: int = 5) -> List[Novel]:
        result = await self.db.execute(
            select(Novel).order_by(*NOVEL_SORTS["views"]).limit(limit)
        )
        return list(result.scalars().all())

    async def record_view(self, novel_id: int, context: RequestContext) -> bool:
        """
        Count a detail view at most once per session.

        Returns True when the counter was incremented.
        """
        if context.has_viewed(novel_id):
            return False

        await self.db.execute(
            update(Novel)
            .where(Novel.id == novel_id)
            .values(views=Novel.views + 1)
        )
        await self.db.commit()
        context.mark_viewed(novel_id)
        return True

    async def list_categories(self) -> List[str]:
        result = await self.db.execute(
            select(Category.name).join(novel_categories).distinct().order_by(Category.name)
        )
        return list(result.scalars().all())

    async def list_tags(self) -> List[str]:
        result = await self.db.execute(
            select(Tag.name).join(novel_tags).distinct().order_by(Tag.name)
        )
        return list(result.scalars().all())

    async def _resolve_names(self, model, names: List[str]) -> list:
        """Load named rows, creating the missing ones."""
        if not names:
            return []
        result = await self.db.execute(select(model).where(model.name.in_(names)))
        existing = {obj.name: obj for obj in result.scalars().all()}

        objects = []
        for name in names:
            obj = existing.get(name)
            if obj is None:
                obj = model(name=name)
                self.db.add(obj)
                existing[name] = obj
            objects.append(obj)
        return objects

    async def create_novel(self, data: NovelCreate) -> Novel:
        fields = data.model_dump(exclude={"categories", "tags"})
        if fields.get("custom_prompt") is None:
            fields.pop("custom_prompt")

        novel = Novel(**fields)
        novel.categories = await self._resolve_names(Category, data.categories)
        novel.tags = await self._resolve_names(Tag, data.tags)

        try:
            self.db.add(novel)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to create novel '{data.title}': {e}")
            raise PersistenceFailed("Could not save novel") from e

        await self.db.refresh(novel)
        logger.info(f"Created novel {novel.id}: {novel.title}")
        return novel

    async def update_novel(self, novel_id: int, changes: NovelUpdate) -> Novel:
        novel = await self.get_novel(novel_id)
        fields = changes.model_dump(exclude_unset=True, exclude={"categories", "tags"})
        for name, value in fields.items():
            if value is not None or name == "description":
                setattr(novel, name, value)

        if changes.categories is not None:
            novel.categories = await self._resolve_names(Category, changes.categories or ["General"])
        if changes.tags is not None:
            novel.tags = await self._resolve_names(Tag, changes.tags)

        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceFailed("Could not update novel") from e

        await self.db.refresh(novel)
        return novel

    async def delete_novel(self, novel_id: int):
        """Delete a novel with its chapters, comments, jobs and favorite links."""
        await self.get_novel(novel_id)
        try:
            for statement in (
                delete(user_favorites).where(user_favorites.c.novel_id == novel_id),
                delete(novel_categories).where(novel_categories.c.novel_id == novel_id),
                delete(novel_tags).where(novel_tags.c.novel_id == novel_id),
                delete(Chapter).where(Chapter.novel_id == novel_id),
                delete(Comment).where(Comment.novel_id == novel_id),
                delete(TranslationJob).where(TranslationJob.novel_id == novel_id),
                delete(Novel).where(Novel.id == novel_id),
            ):
                await self.db.execute(statement.execution_options(synchronize_session=False))
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceFailed("Could not delete novel") from e

        self.db.expunge_all()
        logger.info(f"Deleted novel {novel_id}")

    # ------------------------------------------------------------------
    # Chapters
    # ------------------------------------------------------------------

    async def list_chapters(
        self,
        novel_id: int,
        q: Optional[str] = None,
        sort: str = "desc",
        page: int = 1,
    ) -> ChapterPage:
        """
        One page of a novel's chapters.

        A numeric query also matches the chapter number exactly.
        """
        page = max(page, 1)
        sort = sort if sort in CHAPTER_SORTS else "desc"

        base = [Chapter.novel_id == novel_id]
        clauses = list(base)
        if q:
            search = Chapter.title.icontains(q, autoescape=True)
            try:
                number = float(q)
            except ValueError:
                clauses.append(search)
            else:
                clauses.append(or_(search, Chapter.chapter_number == number))

        total_chapters = await self.db.scalar(select(func.count(Chapter.id)).where(*base))
        total = await self.db.scalar(select(func.count(Chapter.id)).where(*clauses))

        offset = (page - 1) * self.chapter_page_size
        result = await self.db.execute(
            select(Chapter)
            .where(*clauses)
            .order_by(*CHAPTER_SORTS[sort])
            .offset(offset)
            .limit(self.chapter_page_size)
        )

        return ChapterPage(
            items=list(result.scalars().all()),
            total=total,
            page=page,
            page_size=self.chapter_page_size,
            total_pages=count_pages(total, self.chapter_page_size),
            total_chapters=total_chapters,
            sort=sort,
        )

    async def get_chapter(self, chapter_id: int) -> Chapter:
        chapter = await self.db.get(Chapter, chapter_id)
        if chapter is None:
            raise NotFound("Chapter", chapter_id)
        return chapter

    async def chapter_navigation(self, chapter: Chapter) -> ChapterNavigation:
        """Previous/next chapter by number plus the ascending table of contents."""
        prev_result = await self.db.execute(
            select(Chapter)
            .where(Chapter.novel_id == chapter.novel_id, Chapter.chapter_number < chapter.chapter_number)
            .order_by(*CHAPTER_SORTS["desc"])
            .limit(1)
        )
        next_result = await self.db.execute(
            select(Chapter)
            .where(Chapter.novel_id == chapter.novel_id, Chapter.chapter_number > chapter.chapter_number)
            .order_by(*CHAPTER_SORTS["asc"])
            .limit(1)
        )
        all_result = await self.db.execute(
            select(Chapter)
            .where(Chapter.novel_id == chapter.novel_id)
            .order_by(*CHAPTER_SORTS["asc"])
        )
        return ChapterNavigation(
            prev_chapter=prev_result.scalar_one_or_none(),
            next_chapter=next_result.scalar_one_or_none(),
            all_chapters=list(all_result.scalars().all()),
        )

    # ------------------------------------------------------------------
    # Comments
    # ------------------------------------------------------------------

    async def list_comments(self, novel_id: int) -> List[Comment]:
        await self.get_novel(novel_id)
        result = await self.db.execute(
            select(Comment).where(Comment.novel_id == novel_id).order_by(Comment.created_at.desc(), Comment.id.desc())
        )
        return list(result.scalars().all())

    async def add_comment(self, novel_id: int, user_id: int, content: str) -> Comment:
        await self.get_novel(novel_id)
        comment = Comment(novel_id=novel_id, user_id=user_id, content=content.strip())
        try:
            self.db.add(comment)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceFailed("Could not save comment") from e

        result = await self.db.execute(
            select(Comment)
            .where(Comment.id == comment.id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()
