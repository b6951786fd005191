"""Chapter ingestion: manual or AI-assisted chapter creation."""
import logging
import math
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, func, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from errors import NoContent, NotFound, PersistenceFailed
from models import Novel, Chapter, utcnow
from normalizer import ContentSanitizer, ChapterTitleNormalizer
from schemas import ChapterIngestRequest, ChapterUpdate
from translation import Translator

logger = logging.getLogger(__name__)


@dataclass
class ChapterDraft:
    """A chapter ready to be stored."""
    chapter_number: float
    title: str
    translated_content: str
    original_content: Optional[str] = None


class ChapterIngestionPipeline:
    """
    Turn submitted text into a stored, sanitized chapter.

    Manual mode stores the supplied translation. Auto mode asks the
    translation provider for number, title and content. In both modes
    the chapter insert and the parent novel's rollup commit together.
    """

    def __init__(
        self,
        db: AsyncSession,
        translator: Translator,
        sanitizer: Optional[ContentSanitizer] = None,
        chapter_label: Optional[str] = None,
    ):
        self.db = db
        self.translator = translator
        self.sanitizer = sanitizer or ContentSanitizer()
        self.chapter_label = chapter_label or settings.chapter_label

    async def get_novel(self, novel_id: int) -> Novel:
        novel = await self.db.get(Novel, novel_id)
        if novel is None:
            raise NotFound("Novel", novel_id)
        return novel

    async def next_chapter_number(self, novel_id: int) -> float:
        """Highest existing chapter number + 1, or 1 for an empty novel."""
        result = await self.db.execute(
            select(func.max(Chapter.chapter_number)).where(Chapter.novel_id == novel_id)
        )
        highest = result.scalar()
        return highest + 1 if highest is not None else 1

    @staticmethod
    def resolve_source_text(payload: ChapterIngestRequest, file_bytes: Optional[bytes] = None) -> Optional[str]:
        """An uploaded file wins over the raw text field."""
        if file_bytes:
            return file_bytes.decode('utf-8-sig', errors='replace')
        return payload.raw_text

    async def ingest(
        self,
        novel_id: int,
        payload: ChapterIngestRequest,
        file_bytes: Optional[bytes] = None,
    ) -> Chapter:
        """
        Create a chapter for a novel.

        Args:
            novel_id: Owning novel
            payload: Validated form fields
            file_bytes: Optional uploaded text file

        Returns:
            The stored Chapter

        Raises:
            NotFound: unknown novel
            NoContent: auto mode without source text
            TranslationFailed: provider failure
            PersistenceFailed: store write failure
        """
        novel = await self.get_novel(novel_id)
        source_text = self.resolve_source_text(payload, file_bytes)

        if payload.mode == "auto" and not source_text:
            raise NoContent()

        next_number = await self.next_chapter_number(novel_id)

        if payload.mode == "manual":
            draft = self.manual_draft(payload, next_number, source_text)
        else:
            draft = await self.auto_draft(novel, source_text, next_number)

        chapter = await self.save(novel, draft)
        logger.info(
            f"Ingested chapter {chapter.chapter_number} ({payload.mode}) "
            f"for novel {novel.id}: {chapter.title}"
        )
        return chapter

    def manual_draft(
        self,
        payload: ChapterIngestRequest,
        next_number: float,
        source_text: Optional[str] = None,
    ) -> ChapterDraft:
        number = payload.manual_chapter_number if payload.manual_chapter_number is not None else next_number
        title = payload.manual_title or ChapterTitleNormalizer.default_title(number, self.chapter_label)
        return ChapterDraft(
            chapter_number=number,
            title=title,
            translated_content=self.sanitizer.sanitize(payload.manual_translated),
            original_content=source_text,
        )

    @staticmethod
    def coerce_chapter_number(value, fallback: float) -> float:
        """A finite number from the provider, or the fallback."""
        if value is None:
            return fallback
        if isinstance(value, bool):
            number = None
        else:
            try:
                number = float(value)
            except (TypeError, ValueError):
                number = None
        if number is None or not math.isfinite(number):
            logger.warning(f"Ignoring unusable chapterNumber from provider: {value!r}")
            return fallback
        return number

    async def auto_draft(self, novel: Novel, source_text: str, next_number: float) -> ChapterDraft:
        data = await self.translator.translate_chapter(novel.custom_prompt, novel.glossary, source_text)

        number = self.coerce_chapter_number(data.get("chapterNumber"), next_number)

        candidate = data.get("title") or data.get("originalTitle")
        return ChapterDraft(
            chapter_number=number,
            title=ChapterTitleNormalizer.build_title(number, candidate, self.chapter_label),
            translated_content=self.sanitizer.sanitize(data.get("translatedContent")),
            original_content=source_text,
        )

    async def save(self, novel: Novel, draft: ChapterDraft) -> Chapter:
        """Insert the chapter and refresh the novel rollup in one transaction."""
        now = utcnow()
        chapter = Chapter(
            novel_id=novel.id,
            chapter_number=draft.chapter_number,
            title=draft.title,
            original_content=draft.original_content,
            translated_content=draft.translated_content,
            created_at=now,
        )
        try:
            self.db.add(chapter)
            novel.updated_at = now
            novel.last_chapter_number = draft.chapter_number
            novel.last_chapter_title = draft.title
            novel.last_chapter_at = now
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to save chapter for novel {novel.id}: {e}")
            raise PersistenceFailed("Could not save chapter") from e

        await self.db.refresh(chapter)
        return chapter

    async def get_chapter(self, chapter_id: int) -> Chapter:
        chapter = await self.db.get(Chapter, chapter_id)
        if chapter is None:
            raise NotFound("Chapter", chapter_id)
        return chapter

    async def update_chapter(self, chapter_id: int, changes: ChapterUpdate) -> Chapter:
        """Apply an edit and recompute the rollup; translated content is sanitized again."""
        chapter = await self.get_chapter(chapter_id)
        novel = await self.get_novel(chapter.novel_id)

        fields = changes.model_dump(exclude_unset=True)
        if "translated_content" in fields:
            fields["translated_content"] = self.sanitizer.sanitize(fields["translated_content"])
        for name, value in fields.items():
            if value is not None or name == "original_content":
                setattr(chapter, name, value)

        try:
            await self.db.flush()
            await self.refresh_rollup(novel)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceFailed("Could not update chapter") from e

        await self.db.refresh(chapter)
        return chapter

    async def delete_chapter(self, chapter_id: int) -> int:
        """Delete a chapter and recompute the rollup. Returns the novel id."""
        chapter = await self.get_chapter(chapter_id)
        novel = await self.get_novel(chapter.novel_id)

        try:
            await self.db.execute(delete(Chapter).where(Chapter.id == chapter_id))
            await self.refresh_rollup(novel)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceFailed("Could not delete chapter") from e

        logger.info(f"Deleted chapter {chapter_id} of novel {novel.id}")
        return novel.id

    async def refresh_rollup(self, novel: Novel):
        """Point last_chapter at the highest numbered remaining chapter."""
        result = await self.db.execute(
            select(Chapter)
            .where(Chapter.novel_id == novel.id)
            .order_by(Chapter.chapter_number.desc(), Chapter.id.desc())
            .limit(1)
        )
        latest = result.scalar_one_or_none()
        if latest is None:
            novel.last_chapter_number = None
            novel.last_chapter_title = None
            novel.last_chapter_at = None
        else:
            novel.last_chapter_number = latest.chapter_number
            novel.last_chapter_title = latest.title
            novel.last_chapter_at = latest.created_at

    async def translate_snippet(self, novel_id: int, text: str) -> str:
        novel = await self.get_novel(novel_id)
        return await self.translator.translate_snippet(novel.custom_prompt, novel.glossary, text)
