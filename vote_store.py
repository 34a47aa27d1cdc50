import logging
from typing import Callable, Dict, Optional

from sqlalchemy import case, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

import models
import schemas
from token_store import dialect_insert, now_ms

logger = logging.getLogger(__name__)


def _counts_query():
    return select(
        models.Vote.token_address,
        func.coalesce(func.sum(case((models.Vote.vote == 1, 1), else_=0)), 0).label("upvotes"),
        func.coalesce(func.sum(case((models.Vote.vote == -1, 1), else_=0)), 0).label("downvotes"),
    ).group_by(models.Vote.token_address)


def vote_counts(db: Session, token_address: str) -> schemas.VoteCounts:
    row = db.execute(_counts_query().where(models.Vote.token_address == token_address)).first()
    if row is None:
        return schemas.VoteCounts()
    return schemas.VoteCounts(upvotes=row.upvotes, downvotes=row.downvotes)


class VoteStore:
    def __init__(self, session_factory: sessionmaker, clock: Callable[[], int] = now_ms):
        self.session_factory = session_factory
        self.clock = clock

    def _write(self, token_address: str, voter_id: str, vote: int, overwrite: bool) -> Optional[schemas.VoteCounts]:
        with self.session_factory() as db:
            try:
                insert = dialect_insert(db)
                stmt = insert(models.Vote.__table__).values(
                    token_address=token_address, voter_id=voter_id, vote=vote, timestamp=self.clock()
                )
                if overwrite:
                    stmt = stmt.on_conflict_do_update(
                        index_elements=["token_address", "voter_id"],
                        set_={"vote": stmt.excluded.vote, "timestamp": stmt.excluded.timestamp},
                    )
                else:
                    stmt = stmt.on_conflict_do_nothing(index_elements=["token_address", "voter_id"])

                result = db.execute(stmt)
                if result.rowcount == 0:
                    db.rollback()
                    return None

                counts = vote_counts(db, token_address)
                db.commit()
                return counts
            except SQLAlchemyError:
                db.rollback()
                logger.exception("Error saving vote of %s for %s", voter_id, token_address)
                raise

    def upsert_vote(self, token_address: str, voter_id: str, vote: int) -> Optional[schemas.VoteCounts]:
        """Stores the vote, replacing an earlier one from the same voter. None on store failure."""
        try:
            return self._write(token_address, voter_id, vote, overwrite=True)
        except SQLAlchemyError:
            return None

    def add_vote(self, token_address: str, voter_id: str, vote: int) -> Optional[schemas.VoteCounts]:
        """
        Stores the vote only if this voter has not voted on the token yet.

        Returns the new counts, or None if a vote already existed. Store
        failures are raised as SQLAlchemyError so callers can tell them apart.
        """
        return self._write(token_address, voter_id, vote, overwrite=False)

    def get_counts(self, token_address: str) -> schemas.VoteCounts:
        with self.session_factory() as db:
            try:
                return vote_counts(db, token_address)
            except SQLAlchemyError:
                logger.exception("Error getting votes for %s", token_address)
                return schemas.VoteCounts()

    def get_vote(self, token_address: str, voter_id: str) -> Optional[int]:
        with self.session_factory() as db:
            try:
                return db.execute(
                    select(models.Vote.vote)
                    .where(models.Vote.token_address == token_address)
                    .where(models.Vote.voter_id == voter_id)
                ).scalar_one_or_none()
            except SQLAlchemyError:
                logger.exception("Error getting vote of %s for %s", voter_id, token_address)
                return None

    def all_counts(self) -> Dict[str, schemas.VoteCounts]:
        with self.session_factory() as db:
            try:
                rows = db.execute(_counts_query()).all()
            except SQLAlchemyError:
                logger.exception("Error getting all votes")
                return {}
        return {row.token_address: schemas.VoteCounts(upvotes=row.upvotes, downvotes=row.downvotes) for row in rows}
