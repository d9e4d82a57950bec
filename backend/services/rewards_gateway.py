"""
Ops Workflow Hub - Rewards Gateway

Awards loyalty points to claim owners. Failures surface as
CollaboratorFailure and are absorbed by the claims workflow.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .workflow_errors import CollaboratorFailure

logger = logging.getLogger(__name__)


@dataclass
class PointsAward:
    owner_ref: str
    amount: int
    action: str
    source: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RewardsGateway(ABC):
    @abstractmethod
    async def award_points(
        self,
        award: PointsAward,
        organisation_id: Optional[str] = None,
        branch_id: Optional[str] = None
    ) -> Any:
        pass


class InMemoryRewardsGateway(RewardsGateway):
    def __init__(self, fail: bool = False):
        self.awards: List[Dict[str, Any]] = []
        self.fail = fail

    async def award_points(
        self,
        award: PointsAward,
        organisation_id: Optional[str] = None,
        branch_id: Optional[str] = None
    ) -> Any:
        if self.fail:
            raise CollaboratorFailure("rewards.award", "Rewards service unavailable")
        entry = {**award.to_dict(), "organisation_id": organisation_id, "branch_id": branch_id}
        self.awards.append(entry)
        return entry

    def total_for(self, owner_ref: str) -> int:
        return sum(a["amount"] for a in self.awards if a["owner_ref"] == owner_ref)


class MotorRewardsGateway(RewardsGateway):
    """
    Points ledger in MongoDB: one 'reward_transactions' entry per award and a
    running balance in 'reward_accounts'.
    """

    def __init__(self, db):
        self.db = db

    async def award_points(
        self,
        award: PointsAward,
        organisation_id: Optional[str] = None,
        branch_id: Optional[str] = None
    ) -> Any:
        now = datetime.now(timezone.utc).isoformat()
        entry = {
            **award.to_dict(),
            "organisation_id": organisation_id,
            "branch_id": branch_id,
            "created_at": now,
        }
        await self.db.reward_transactions.insert_one(dict(entry))
        await self.db.reward_accounts.update_one(
            {"owner_ref": award.owner_ref, "organisation_id": organisation_id},
            {"$inc": {"points": award.amount}, "$set": {"updated_at": now}},
            upsert=True,
        )
        logger.info("Awarded %d points to %s (%s)", award.amount, award.owner_ref, award.action)
        return entry
