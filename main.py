"""FastAPI application - main entry point."""
from fastapi import (
    FastAPI, Depends, HTTPException, Query, Request, Form, File, UploadFile, BackgroundTasks
)
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.sessions import SessionMiddleware
from typing import List, Literal, Optional
import logging

from accounts import AccountService, RequestContext
from catalog import Catalog, NovelFilters
from config import settings
from database import get_db
from errors import NotFound, NovelLibraryError, PermissionDenied, PersistenceFailed
from ingestion_queue import TranslationQueue, get_job
from models import NovelStatus, UserRole
from pipeline import ChapterIngestionPipeline
from schemas import (
    NovelCreate, NovelUpdate, ChapterIngestRequest, ChapterUpdate, SnippetRequest,
    CommentCreate, Credentials,
    NovelListResponse, NovelListItem, NovelDetail, NovelPageResponse,
    ChapterListResponse, ChapterListItem, ChapterDetail, ChapterReadResponse,
    IngestionResult, FavoriteToggleResponse, SnippetResponse, CommentSchema,
    UserSchema, TranslationJobResponse, NameListResponse,
)
from translation import Translator, get_provider

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Novel Library API",
    description="Backend API for publishing and reading translated web novels",
    version="1.0.0",
)

app.add_middleware(
    SessionMiddleware,
    secret_key=settings.session_secret,
    max_age=settings.session_max_age,
)


# ============================================================================
# Dependencies
# ============================================================================

def get_context(request: Request) -> RequestContext:
    """Session-backed request context. Handlers that change it call save()."""
    return RequestContext.from_session(request.session)


def get_catalog(db: AsyncSession = Depends(get_db)) -> Catalog:
    return Catalog(db)


def get_accounts(db: AsyncSession = Depends(get_db)) -> AccountService:
    return AccountService(db)


def get_pipeline(
    db: AsyncSession = Depends(get_db),
    provider=Depends(get_provider),
) -> ChapterIngestionPipeline:
    return ChapterIngestionPipeline(db, Translator(provider))


def get_translation_queue() -> TranslationQueue:
    return TranslationQueue()


def wants_json(request: Request) -> bool:
    """Programmatic callers get JSON; form posts get redirected."""
    accept = request.headers.get("accept", "")
    return "application/json" in accept or request.headers.get("x-requested-with") == "XMLHttpRequest"


def novel_redirect(novel_id: int) -> RedirectResponse:
    return RedirectResponse(url=f"/novels/{novel_id}", status_code=303)


@app.exception_handler(NovelLibraryError)
async def library_error_handler(request: Request, exc: NovelLibraryError):
    """Render domain errors as a structured failure."""
    status_code = exc.status_code
    if isinstance(exc, PermissionDenied) and not request.session.get("user_id"):
        status_code = 401

    if isinstance(exc, PersistenceFailed) and status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.warning(f"{request.method} {request.url.path}: {exc}")

    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": exc.message},
    )


# ============================================================================
# Novel Endpoints
# ============================================================================

@app.get("/novels", response_model=NovelListResponse, tags=["Novels"])
async def list_novels(
    q: Optional[str] = None,
    category: Optional[str] = None,
    tag: List[str] = Query(default=[]),
    status: Optional[NovelStatus] = None,
    sort: str = "updated",
    page: int = 1,
    catalog: Catalog = Depends(get_catalog),
):
    """
    List novels, twelve per page.

    All filters are optional and must all match; every requested tag must
    be present on a novel. An unfiltered first page also carries a random
    recommended novel.
    """
    filters = NovelFilters(q=q, category=category, status=status, tags=tag)
    result = await catalog.list_novels(filters, sort=sort, page=page)
    recommended = await catalog.recommended(filters, page=page)

    return NovelListResponse(
        items=[NovelListItem.from_novel(n) for n in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        total_pages=result.total_pages,
        recommended=NovelListItem.from_novel(recommended) if recommended else None,
    )


@app.get("/novels/top", response_model=List[NovelListItem], tags=["Novels"])
async def top_novels(
    limit: int = Query(5, ge=1, le=50),
    catalog: Catalog = Depends(get_catalog),
):
    """Most viewed novels."""
    return [NovelListItem.from_novel(n) for n in await catalog.top_novels(limit)]


@app.get("/novels/random", tags=["Novels"])
async def random_novel(catalog: Catalog = Depends(get_catalog)):
    """Id of a uniformly random novel."""
    novel_id = await catalog.random_novel_id()
    if novel_id is None:
        raise NotFound("Novel")
    return {"novel_id": novel_id}


@app.post("/novels", response_model=NovelDetail, status_code=201, tags=["Novels"])
async def create_novel(
    data: NovelCreate,
    context: RequestContext = Depends(get_context),
    catalog: Catalog = Depends(get_catalog),
):
    context.require(UserRole.ADMIN)
    novel = await catalog.create_novel(data)
    return NovelDetail.from_novel(novel)


@app.get("/novels/{novel_id}", response_model=NovelPageResponse, tags=["Novels"])
async def get_novel(
    novel_id: int,
    request: Request,
    chapter_q: Optional[str] = None,
    chapter_sort: str = "desc",
    chapter_page: int = 1,
    context: RequestContext = Depends(get_context),
    catalog: Catalog = Depends(get_catalog),
    accounts: AccountService = Depends(get_accounts),
):
    """
    Novel detail with one page of chapters.

    The view counter moves at most once per session for each novel.
    """
    await catalog.get_novel(novel_id)
    if await catalog.record_view(novel_id, context):
        context.save(request.session)
    novel = await catalog.get_novel(novel_id)

    chapters = await catalog.list_chapters(
        novel_id, q=chapter_q, sort=chapter_sort, page=chapter_page
    )
    is_favorite = False
    if context.is_authenticated:
        is_favorite = await accounts.is_favorite(context.user_id, novel_id)

    return NovelPageResponse(
        novel=NovelDetail.from_novel(novel),
        chapters=ChapterListResponse(
            items=[ChapterListItem.model_validate(c) for c in chapters.items],
            total=chapters.total,
            total_chapters=chapters.total_chapters,
            page=chapters.page,
            page_size=chapters.page_size,
            total_pages=chapters.total_pages,
            sort=chapters.sort,
        ),
        is_favorite=is_favorite,
    )


@app.put("/novels/{novel_id}", response_model=NovelDetail, tags=["Novels"])
async def update_novel(
    novel_id: int,
    changes: NovelUpdate,
    context: RequestContext = Depends(get_context),
    catalog: Catalog = Depends(get_catalog),
):
    context.require(UserRole.ADMIN)
    novel = await catalog.update_novel(novel_id, changes)
    return NovelDetail.from_novel(novel)


@app.delete("/novels/{novel_id}", tags=["Novels"])
async def delete_novel(
    novel_id: int,
    context: RequestContext = Depends(get_context),
    catalog: Catalog = Depends(get_catalog),
):
    """Delete a novel together with its chapters, comments and favorite links."""
    context.require(UserRole.ADMIN)
    await catalog.delete_novel(novel_id)
    return {"success": True}


# ============================================================================
# Chapter Endpoints
# ============================================================================

@app.post("/novels/{novel_id}/chapters", tags=["Chapters"])
async def create_chapter(
    novel_id: int,
    request: Request,
    mode: Literal["manual", "auto"] = Form("auto"),
    raw_text: Optional[str] = Form(None),
    manual_title: Optional[str] = Form(None),
    manual_chapter_number: Optional[str] = Form(None),
    manual_translated: Optional[str] = Form(None),
    txt_file: Optional[UploadFile] = File(None),
    context: RequestContext = Depends(get_context),
    pipeline: ChapterIngestionPipeline = Depends(get_pipeline),
):
    """
    Add a chapter, typed in manually or translated by the AI.

    The text may come from `raw_text` or an uploaded UTF-8 `txt_file`.
    """
    context.require(UserRole.WRITER)
    try:
        payload = ChapterIngestRequest(
            mode=mode,
            raw_text=raw_text,
            manual_title=manual_title,
            manual_chapter_number=manual_chapter_number,
            manual_translated=manual_translated,
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False))

    file_bytes = await txt_file.read() if txt_file is not None else None
    chapter = await pipeline.ingest(novel_id, payload, file_bytes)

    if not wants_json(request):
        return novel_redirect(novel_id)

    result = IngestionResult(
        success=True,
        message="Translated and saved" if mode == "auto" else "Saved",
        chapter=ChapterDetail.model_validate(chapter),
    )
    return JSONResponse(status_code=201, content=result.model_dump(mode="json"))


@app.post(
    "/novels/{novel_id}/chapters/queue",
    response_model=TranslationJobResponse,
    status_code=202,
    tags=["Chapters"],
)
async def queue_chapter(
    novel_id: int,
    background_tasks: BackgroundTasks,
    raw_text: Optional[str] = Form(None),
    txt_file: Optional[UploadFile] = File(None),
    context: RequestContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
    queue: TranslationQueue = Depends(get_translation_queue),
):
    """
    Queue an AI translation and return immediately.

    Poll `/jobs/{job_id}` for the outcome.
    """
    context.require(UserRole.WRITER)
    file_bytes = await txt_file.read() if txt_file is not None else None
    source_text = ChapterIngestionPipeline.resolve_source_text(
        ChapterIngestRequest(mode="auto", raw_text=raw_text), file_bytes
    )

    job = await queue.create_job(db, novel_id, source_text)
    background_tasks.add_task(queue.enqueue_job, job.id)
    return TranslationJobResponse.model_validate(job)


@app.get("/jobs/{job_id}", response_model=TranslationJobResponse, tags=["Chapters"])
async def get_job_status(job_id: int, db: AsyncSession = Depends(get_db)):
    """Get status of a translation job."""
    return TranslationJobResponse.model_validate(await get_job(db, job_id))


@app.post("/novels/{novel_id}/translate", response_model=SnippetResponse, tags=["Chapters"])
async def translate_snippet(
    novel_id: int,
    data: SnippetRequest,
    context: RequestContext = Depends(get_context),
    pipeline: ChapterIngestionPipeline = Depends(get_pipeline),
):
    """Translate a short passage with the novel's style and glossary."""
    context.require(UserRole.WRITER)
    return SnippetResponse(translated_text=await pipeline.translate_snippet(novel_id, data.text))


@app.get("/chapters/{chapter_id}", response_model=ChapterReadResponse, tags=["Chapters"])
async def read_chapter(chapter_id: int, catalog: Catalog = Depends(get_catalog)):
    """A chapter with previous/next links and the table of contents."""
    chapter = await catalog.get_chapter(chapter_id)
    novel = await catalog.get_novel(chapter.novel_id)
    navigation = await catalog.chapter_navigation(chapter)

    return ChapterReadResponse(
        chapter=ChapterDetail.model_validate(chapter),
        novel=NovelListItem.from_novel(novel),
        prev_chapter=ChapterListItem.model_validate(navigation.prev_chapter) if navigation.prev_chapter else None,
        next_chapter=ChapterListItem.model_validate(navigation.next_chapter) if navigation.next_chapter else None,
        all_chapters=[ChapterListItem.model_validate(c) for c in navigation.all_chapters],
    )


@app.put("/chapters/{chapter_id}", response_model=ChapterDetail, tags=["Chapters"])
async def update_chapter(
    chapter_id: int,
    changes: ChapterUpdate,
    context: RequestContext = Depends(get_context),
    pipeline: ChapterIngestionPipeline = Depends(get_pipeline),
):
    context.require(UserRole.WRITER)
    return ChapterDetail.model_validate(await pipeline.update_chapter(chapter_id, changes))


@app.delete("/chapters/{chapter_id}", tags=["Chapters"])
async def delete_chapter(
    chapter_id: int,
    context: RequestContext = Depends(get_context),
    pipeline: ChapterIngestionPipeline = Depends(get_pipeline),
):
    context.require(UserRole.ADMIN)
    novel_id = await pipeline.delete_chapter(chapter_id)
    return {"success": True, "novel_id": novel_id}


# ============================================================================
# Favorites & Comments
# ============================================================================

@app.post("/novels/{novel_id}/favorite", tags=["Favorites"])
async def toggle_favorite(
    novel_id: int,
    request: Request,
    context: RequestContext = Depends(get_context),
    accounts: AccountService = Depends(get_accounts),
):
    """Add the novel to the user's favorites, or remove it if already there."""
    user_id = context.require(UserRole.READER)
    is_favorite = await accounts.toggle_favorite(user_id, novel_id)

    if not wants_json(request):
        return novel_redirect(novel_id)
    return FavoriteToggleResponse(is_favorite=is_favorite)


@app.get("/me/favorites", response_model=List[NovelListItem], tags=["Favorites"])
async def list_favorites(
    context: RequestContext = Depends(get_context),
    accounts: AccountService = Depends(get_accounts),
):
    user_id = context.require(UserRole.READER)
    return [NovelListItem.from_novel(n) for n in await accounts.list_favorites(user_id)]


@app.get("/novels/{novel_id}/comments", response_model=List[CommentSchema], tags=["Comments"])
async def list_comments(novel_id: int, catalog: Catalog = Depends(get_catalog)):
    return [CommentSchema.model_validate(c) for c in await catalog.list_comments(novel_id)]


@app.post("/novels/{novel_id}/comments", response_model=CommentSchema, status_code=201, tags=["Comments"])
async def add_comment(
    novel_id: int,
    data: CommentCreate,
    context: RequestContext = Depends(get_context),
    catalog: Catalog = Depends(get_catalog),
):
    user_id = context.require(UserRole.READER)
    return CommentSchema.model_validate(await catalog.add_comment(novel_id, user_id, data.content))


# ============================================================================
# Accounts
# ============================================================================

@app.post("/register", response_model=UserSchema, status_code=201, tags=["Accounts"])
async def register(
    data: Credentials,
    request: Request,
    context: RequestContext = Depends(get_context),
    accounts: AccountService = Depends(get_accounts),
):
    """Create a reader account and log it in."""
    user = await accounts.register(data.username, data.password)
    context.login(user)
    context.save(request.session)
    return UserSchema.model_validate(user)


@app.post("/login", response_model=UserSchema, tags=["Accounts"])
async def login(
    data: Credentials,
    request: Request,
    context: RequestContext = Depends(get_context),
    accounts: AccountService = Depends(get_accounts),
):
    user = await accounts.authenticate(data.username, data.password)
    if user is None:
        raise PermissionDenied("Invalid username or password")
    context.login(user)
    context.save(request.session)
    return UserSchema.model_validate(user)


@app.post("/logout", tags=["Accounts"])
async def logout(request: Request, context: RequestContext = Depends(get_context)):
    context.logout()
    context.save(request.session)
    return {"success": True}


@app.get("/me", response_model=UserSchema, tags=["Accounts"])
async def current_user(context: RequestContext = Depends(get_context)):
    context.require(UserRole.READER)
    return UserSchema(id=context.user_id, username=context.username, role=context.role)


# ============================================================================
# Categories & Tags
# ============================================================================

@app.get("/categories", response_model=NameListResponse, tags=["Catalog"])
async def list_categories(catalog: Catalog = Depends(get_catalog)):
    """Categories in use by at least one novel."""
    names = await catalog.list_categories()
    return NameListResponse(items=names, total=len(names))


@app.get("/tags", response_model=NameListResponse, tags=["Catalog"])
async def list_tags(catalog: Catalog = Depends(get_catalog)):
    """Tags in use by at least one novel."""
    names = await catalog.list_tags()
    return NameListResponse(items=names, total=len(names))


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health", tags=["System"])
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "novel-library"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
    )
