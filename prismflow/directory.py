"""Lookups answered by the surrounding application (role membership, user names)."""

from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence


class Directory(Protocol):
    """Role, department and user-profile queries the engine depends on."""

    async def role_members(self, role_id: str) -> List[str]:
        """Return ids of users currently holding ``role_id``."""

    async def department_members(self, department_id: str) -> List[str]:
        """Return ids of users who can pick up department-level work."""

    async def user_roles(self, user_id: str) -> List[str]:
        """Return the role ids held by ``user_id``."""

    async def user_names(self, user_ids: Iterable[str]) -> Dict[str, str]:
        """Return display names for the known users among ``user_ids``."""


class StaticDirectory(Directory):
    """Directory backed by plain mappings.

    Used by the CLI (built from the ``directory`` config section) and tests.
    """

    def __init__(
        self,
        roles: Optional[Mapping[str, Sequence[str]]] = None,
        departments: Optional[Mapping[str, Sequence[str]]] = None,
        users: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._roles = {k: list(v) for k, v in (roles or {}).items()}
        self._departments = {k: list(v) for k, v in (departments or {}).items()}
        self._users = dict(users or {})

    async def role_members(self, role_id: str) -> List[str]:
        return list(self._roles.get(role_id, []))

    async def department_members(self, department_id: str) -> List[str]:
        return list(self._departments.get(department_id, []))

    async def user_roles(self, user_id: str) -> List[str]:
        return [role for role, members in self._roles.items() if user_id in members]

    async def user_names(self, user_ids: Iterable[str]) -> Dict[str, str]:
        return {uid: self._users[uid] for uid in user_ids if uid in self._users}

    def add_role_member(self, role_id: str, user_id: str) -> None:
        self._roles.setdefault(role_id, []).append(user_id)

    def remove_role_member(self, role_id: str, user_id: str) -> None:
        members = self._roles.get(role_id, [])
        if user_id in members:
            members.remove(user_id)

    def rename_user(self, user_id: str, name: str) -> None:
        self._users[user_id] = name
