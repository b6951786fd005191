"""Accounts, request context and favorites."""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import bcrypt
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from config import settings
from errors import DuplicateUsername, NotFound, PermissionDenied, PersistenceFailed
from models import Novel, User, UserRole

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    # bcrypt only looks at the first 72 bytes
    return bcrypt.hashpw(password.encode("utf-8")[:72], bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8")[:72], password_hash.encode("utf-8"))


@dataclass
class RequestContext:
    """
    Per-request view of the signed session cookie.

    Handlers receive this explicitly instead of reading globals.
    """
    user_id: Optional[int] = None
    username: Optional[str] = None
    role: Optional[UserRole] = None
    # Most recent last; trimmed to settings.viewed_novels_limit
    viewed_novels: List[int] = field(default_factory=list)

    @classmethod
    def from_session(cls, session: dict) -> "RequestContext":
        role = session.get("role")
        return cls(
            user_id=session.get("user_id"),
            username=session.get("username"),
            role=UserRole(role) if role else None,
            viewed_novels=list(session.get("viewed_novels", [])),
        )

    def has_viewed(self, novel_id: int) -> bool:
        return novel_id in self.viewed_novels

    def mark_viewed(self, novel_id: int):
        """Remember a viewed novel, forgetting the oldest once the cap is hit."""
        if novel_id in self.viewed_novels:
            self.viewed_novels.remove(novel_id)
        self.viewed_novels.append(novel_id)
        limit = settings.viewed_novels_limit
        if len(self.viewed_novels) > limit:
            del self.viewed_novels[:-limit]

    def save(self, session: dict):
        if self.user_id is None:
            for key in ("user_id", "username", "role"):
                session.pop(key, None)
        else:
            session["user_id"] = self.user_id
            session["username"] = self.username
            session["role"] = self.role.value
        session["viewed_novels"] = self.viewed_novels[-settings.viewed_novels_limit:]

    def login(self, user: User):
        self.user_id = user.id
        self.username = user.username
        self.role = UserRole(user.role)

    def logout(self):
        self.user_id = None
        self.username = None
        self.role = None

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def require(self, role: UserRole = UserRole.READER) -> int:
        """Return the user id, or raise when the session's role is too low."""
        if not self.is_authenticated:
            raise PermissionDenied("Login required")
        if not self.role.allows(role):
            raise PermissionDenied(f"{role.value} role required", {"role": self.role.value})
        return self.user_id


class AccountService:
    """Registration, login and favorites."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def register(self, username: str, password: str, role: UserRole = UserRole.READER) -> User:
        username = username.strip()
        existing = await self.db.scalar(select(User.id).where(User.username == username))
        if existing is not None:
            raise DuplicateUsername(username)

        user = User(username=username, password_hash=hash_password(password), role=role)
        try:
            self.db.add(user)
            await self.db.commit()
        except IntegrityError as e:
            # Lost a race with a concurrent registration
            await self.db.rollback()
            raise DuplicateUsername(username) from e
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceFailed("Could not create account") from e

        logger.info(f"Registered user {user.id} ({user.username}, {role.value})")
        return user

    async def authenticate(self, username: str, password: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.username == username.strip()))
        user = result.scalar_one_or_none()
        if user and verify_password(password, user.password_hash):
            return user
        return None

    async def _load_user(self, user_id: int) -> User:
        result = await self.db.execute(
            select(User).options(selectinload(User.favorites)).where(User.id == user_id)
        )
        user = result.scalar_one_or_none()
        if user is None:
            raise NotFound("User", user_id)
        return user

    async def toggle_favorite(self, user_id: int, novel_id: int) -> bool:
        """
        Flip a novel's membership in the user's favorites.

        Returns True when the novel is now a favorite.
        """
        user = await self._load_user(user_id)
        novel = await self.db.get(Novel, novel_id)
        if novel is None:
            raise NotFound("Novel", novel_id)

        if novel in user.favorites:
            user.favorites.remove(novel)
            is_favorite = False
        else:
            user.favorites.append(novel)
            is_favorite = True

        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceFailed("Could not update favorites") from e

        return is_favorite

    async def list_favorites(self, user_id: int) -> List[Novel]:
        user = await self._load_user(user_id)
        return sorted(user.favorites, key=lambda n: n.title.lower())

    async def is_favorite(self, user_id: int, novel_id: int) -> bool:
        user = await self._load_user(user_id)
        return any(n.id == novel_id for n in user.favorites)
