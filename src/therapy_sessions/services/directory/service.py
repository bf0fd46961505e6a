from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from pydantic import TypeAdapter

from src.therapy_sessions.config import settings
from src.therapy_sessions.domain.errors import NoChildLinked
from src.therapy_sessions.domain.models.user import ChildSummary, User, UserRole

logger = logging.getLogger(__name__)

_USER_LIST = TypeAdapter(List[User])


class InMemoryDirectoryService:
    """Very small in-memory user directory.

    Stands in for the platform's user store: it answers who a caller is,
    which role they hold and, for parents, which child they act for.
    Entries arrive from a seed file at startup or are provisioned from the
    identity headers the gateway forwards; registration and profile editing
    live elsewhere.
    """

    def __init__(self) -> None:
        self._users: Dict[str, User] = {}

    def upsert_user(self, user: User) -> User:
        self._users[user.id] = user
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        return self._users.get(user_id)

    def provision(
        self,
        user_id: str,
        role: UserRole,
        *,
        name: Optional[str] = None,
        children: Optional[Sequence[str]] = None,
    ) -> User:
        """Create or refresh a user from upstream-verified identity claims.

        Profile fields already known (disability type, notes) are kept when
        the role is unchanged. ``name`` and ``children`` only overwrite the
        stored values when supplied.
        """

        existing = self._users.get(user_id)
        if existing is not None and existing.role == role:
            base = existing
        else:
            base = User(id=user_id, role=role, name=name or user_id)

        updates: Dict[str, object] = {}
        if name:
            updates["name"] = name
        if children is not None:
            updates["children"] = list(children)
        return self.upsert_user(base.model_copy(update=updates))

    def load_seed_file(self, path: str) -> int:
        """Load a JSON array of users; returns how many were stored."""

        users = _USER_LIST.validate_json(Path(path).read_bytes())
        for user in users:
            self.upsert_user(user)
        return len(users)

    def resolve_child_id(self, user: User) -> str:
        """Return the child a caller acts for.

        Children act for themselves; parents act for their first linked
        child. Everyone else has no child side of the lifecycle.
        """

        if user.role == UserRole.CHILD:
            return user.id
        if user.role == UserRole.PARENT and user.children:
            return user.children[0]
        raise NoChildLinked()

    def get_child_summary(self, child_id: str) -> ChildSummary:
        child = self._users.get(child_id)
        if child is None:
            # Unknown children still render; only the id is known.
            return ChildSummary(id=child_id)
        return ChildSummary(
            id=child.id,
            name=child.name,
            disability_type=child.disability_type,
            additional_info=child.additional_info,
        )


directory_service = InMemoryDirectoryService()


def init_directory(
    seed_file: Optional[str] = None,
    *,
    directory: Optional[InMemoryDirectoryService] = None,
) -> int:
    """Load DIRECTORY_SEED_FILE into the directory, if one is configured."""

    path = seed_file or settings.directory_seed_file
    if not path:
        return 0

    target = directory or directory_service
    count = target.load_seed_file(path)
    logger.info("Loaded %d users into the directory from %s", count, path)
    return count
