"""
Ops Workflow Hub - User Directory

Resolves owner/approver references to users and finds the admin-role
recipients of a tenant. Users are read from the 'users' collection.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, List, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass
class UserRef:
    """Minimal user view needed by the workflows."""
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    organisation_id: Optional[str] = None
    branch_id: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.email or self.id

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserRef":
        name = data.get("name")
        if not name and (data.get("first_name") or data.get("surname")):
            name = " ".join(p for p in (data.get("first_name"), data.get("surname")) if p)
        return cls(
            id=str(data.get("id") or data.get("uid")),
            name=name,
            email=data.get("email"),
            role=(data.get("role") or "").lower() or None,
            organisation_id=data.get("organisation_id"),
            branch_id=data.get("branch_id"),
        )


def _in_scope(user: UserRef, organisation_id: Optional[str], branch_id: Optional[str]) -> bool:
    if organisation_id is not None and str(user.organisation_id) != str(organisation_id):
        return False
    if branch_id is not None and user.branch_id is not None and str(user.branch_id) != str(branch_id):
        return False
    return True


class UserDirectory(ABC):
    """Abstract user lookup."""

    @abstractmethod
    async def get_user(self, user_ref: str) -> Optional[UserRef]:
        pass

    @abstractmethod
    async def find_admins(
        self,
        organisation_id: Optional[str],
        branch_id: Optional[str],
        roles: Sequence[str]
    ) -> List[UserRef]:
        """Users of the tenant holding one of the admin roles."""
        pass


class InMemoryUserDirectory(UserDirectory):
    def __init__(self, users: Iterable[UserRef] = ()):
        self.users: Dict[str, UserRef] = {}
        for user in users:
            self.add(user)

    def add(self, user: UserRef) -> UserRef:
        self.users[str(user.id)] = user
        return user

    async def get_user(self, user_ref: str) -> Optional[UserRef]:
        if user_ref is None:
            return None
        return self.users.get(str(user_ref))

    async def find_admins(
        self,
        organisation_id: Optional[str],
        branch_id: Optional[str],
        roles: Sequence[str]
    ) -> List[UserRef]:
        roles = {r.lower() for r in roles}
        return [
            u for u in self.users.values()
            if (u.role or "") in roles and _in_scope(u, organisation_id, branch_id)
        ]


class MotorUserDirectory(UserDirectory):
    """User lookup over the MongoDB 'users' collection."""

    def __init__(self, db):
        self.db = db

    async def get_user(self, user_ref: str) -> Optional[UserRef]:
        if user_ref is None:
            return None
        doc = await self.db.users.find_one({"id": str(user_ref)}, {"_id": 0})
        return UserRef.from_dict(doc) if doc else None

    async def find_admins(
        self,
        organisation_id: Optional[str],
        branch_id: Optional[str],
        roles: Sequence[str]
    ) -> List[UserRef]:
        query: Dict[str, Any] = {"role": {"$in": list(roles)}}
        if organisation_id is not None:
            query["organisation_id"] = organisation_id
        if branch_id is not None:
            query["$or"] = [{"branch_id": branch_id}, {"branch_id": None}]
        docs = await self.db.users.find(query, {"_id": 0}).to_list(500)
        return [UserRef.from_dict(d) for d in docs]
