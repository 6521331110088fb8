from __future__ import annotations

from datetime import datetime, UTC
from typing import Any, Dict

from sqlalchemy import func
from sqlalchemy.orm import Session

from boardroom.data.upsert import upsert_row
from boardroom.models.voting import Vote, VoteChoice


def empty_tally() -> Dict[str, int]:
    return {choice.tally_key: 0 for choice in VoteChoice}


def serialize_vote(vote: Vote) -> Dict[str, Any]:
    return {
        "id": vote.id,
        "decisionId": vote.decision_id,
        "userId": vote.user_id,
        "vote": vote.vote,
        "createdAt": vote.created_at.isoformat() if vote.created_at else None,
        "updatedAt": vote.updated_at.isoformat() if vote.updated_at else None,
    }


class VoteManager:
    """One vote per (decision, voter); tallies are derived on demand."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def cast_vote(self, decision_id: str, user_id: str, choice: VoteChoice) -> Vote:
        """Record the voter's choice, replacing any earlier vote on the decision."""
        upsert_row(
            self.db,
            Vote,
            {
                "decision_id": decision_id,
                "user_id": user_id,
                "vote": choice.value,
                "updated_at": datetime.now(UTC),
            },
            conflict_columns=("decision_id", "user_id"),
            update_columns=("vote", "updated_at"),
        )
        self.db.commit()
        return self.get_vote(decision_id, user_id)

    def get_vote(self, decision_id: str, user_id: str) -> Vote:
        return (
            self.db.query(Vote)
            .filter(Vote.decision_id == decision_id, Vote.user_id == user_id)
            .one()
        )

    def aggregate_tally(self, decision_id: str) -> Dict[str, int]:
        """Count votes per choice; choices nobody picked report zero."""
        rows = (
            self.db.query(Vote.vote, func.count(Vote.id))
            .filter(Vote.decision_id == decision_id)
            .group_by(Vote.vote)
            .all()
        )
        tally = empty_tally()
        for value, count in rows:
            try:
                key = VoteChoice(value).tally_key
            except ValueError:
                continue
            tally[key] = int(count or 0)
        return tally
