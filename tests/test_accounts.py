"""Tests for accounts, request context and favorites."""
import pytest

from accounts import AccountService, RequestContext, hash_password, verify_password
from config import settings
from catalog import Catalog
from errors import DuplicateUsername, NotFound, PermissionDenied
from models import UserRole
from schemas import NovelCreate


def test_password_hashing():
    hashed = hash_password("hunter2")
    assert hashed != "hunter2"
    assert verify_password("hunter2", hashed)
    assert not verify_password("hunter3", hashed)


class TestRequestContext:
    def test_anonymous(self):
        context = RequestContext.from_session({})
        assert not context.is_authenticated
        with pytest.raises(PermissionDenied):
            context.require()

    def test_role_tiers(self):
        writer = RequestContext(user_id=1, username="w", role=UserRole.WRITER)

        assert writer.require(UserRole.READER) == 1
        assert writer.require(UserRole.WRITER) == 1
        with pytest.raises(PermissionDenied):
            writer.require(UserRole.ADMIN)

    def test_session_round_trip(self):
        session = {}
        context = RequestContext(user_id=3, username="admin", role=UserRole.ADMIN, viewed_novels=[4, 2])
        context.save(session)

        restored = RequestContext.from_session(session)
        assert restored == context
        assert restored.is_admin
        assert session["viewed_novels"] == [4, 2]

    def test_logout_keeps_viewed_novels(self):
        session = {}
        context = RequestContext(user_id=3, username="reader", role=UserRole.READER, viewed_novels=[1])
        context.save(session)

        context.logout()
        context.save(session)

        assert "user_id" not in session
        assert session["viewed_novels"] == [1]

    def test_viewed_novels_keep_most_recent(self, monkeypatch):
        monkeypatch.setattr(settings, "viewed_novels_limit", 3)
        context = RequestContext()
        for novel_id in (1, 2, 3, 1, 4):
            context.mark_viewed(novel_id)

        session = {}
        context.save(session)

        assert session["viewed_novels"] == [3, 1, 4]
        assert not RequestContext.from_session(session).has_viewed(2)


class TestAccountService:
    async def test_register_and_authenticate(self, db):
        accounts = AccountService(db)
        user = await accounts.register("  alice ", "wonderland")

        assert user.username == "alice"
        assert user.role == UserRole.READER
        assert (await accounts.authenticate("alice", "wonderland")).id == user.id
        assert await accounts.authenticate("alice", "wrong") is None
        assert await accounts.authenticate("nobody", "wonderland") is None

    async def test_duplicate_username(self, db):
        accounts = AccountService(db)
        await accounts.register("bob", "builder")

        with pytest.raises(DuplicateUsername) as exc_info:
            await accounts.register("bob", "another")
        assert exc_info.value.status_code == 409


class TestFavorites:
    @pytest.fixture
    async def setup(self, db):
        novel = await Catalog(db).create_novel(NovelCreate(title="Beloved"))
        user = await AccountService(db).register("fan", "secret")
        return user.id, novel.id

    async def test_toggle_is_an_involution(self, db, setup):
        user_id, novel_id = setup
        accounts = AccountService(db)

        assert await accounts.toggle_favorite(user_id, novel_id) is True
        assert await accounts.is_favorite(user_id, novel_id)

        assert await accounts.toggle_favorite(user_id, novel_id) is False
        assert not await accounts.is_favorite(user_id, novel_id)

    async def test_list_favorites(self, db, setup):
        user_id, novel_id = setup
        accounts = AccountService(db)
        other = await Catalog(db).create_novel(NovelCreate(title="Another"))

        await accounts.toggle_favorite(user_id, novel_id)
        await accounts.toggle_favorite(user_id, other.id)

        assert [n.title for n in await accounts.list_favorites(user_id)] == ["Another", "Beloved"]

    async def test_unknown_novel(self, db, setup):
        user_id, _ = setup
        with pytest.raises(NotFound):
            await AccountService(db).toggle_favorite(user_id, 999)
