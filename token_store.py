import logging
import time
from collections import namedtuple
from typing import Callable, List, Optional

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

import models
import schemas

logger = logging.getLogger(__name__)

HOUR_MS = 60 * 60 * 1000

SORT_KEYS = {
    "boosted": models.Token.boosted,
    "dateAdded": models.Token.date_added,
    "totalAmount": models.Token.total_amount,
    "amount": models.Token.amount,
    "marketCap": models.Token.market_cap,
    "liquidity": models.Token.liquidity,
    "volume24h": models.Token.volume24h,
    "volume6h": models.Token.volume6h,
    "volume1h": models.Token.volume1h,
    "currentPrice": models.Token.current_price,
}

# overwritten on conflict; date_added, pinned_until and total_amount are handled separately
UPDATE_COLUMNS = [
    "token_name", "token_symbol", "url", "chain_id", "icon", "header", "open_graph",
    "description", "links", "market_cap", "current_price", "liquidity", "volume24h",
    "volume6h", "volume1h", "pairs_available", "dex_pair", "pair_created_at", "amount",
    "boosted",
]

MARKET_COLUMNS = [
    "links", "market_cap", "current_price", "liquidity", "volume24h", "volume6h",
    "volume1h", "pairs_available",
]

UpsertResult = namedtuple("UpsertResult", ["created", "token"])


def now_ms() -> int:
    return int(time.time() * 1000)


def dialect_insert(db: Session):
    if db.get_bind().dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


def pinned_count(db: Session, now: int, exclude_address: Optional[str] = None) -> int:
    query = select(func.count()).select_from(models.Token).where(models.Token.pinned_until > now)
    if exclude_address is not None:
        query = query.where(models.Token.token_address != exclude_address)
    return db.execute(query).scalar_one()


def is_pinned(db: Session, token_address: str, now: int) -> bool:
    pinned_until = db.execute(
        select(models.Token.pinned_until).where(models.Token.token_address == token_address)
    ).scalar_one_or_none()
    return bool(pinned_until and pinned_until > now)


def extend_pin(db: Session, token_address: str, hours: int, now: int) -> bool:
    """Pushes pinned_until forward from max(now, pinned_until) and counts the pin as a boost."""
    base = case((models.Token.pinned_until > now, models.Token.pinned_until), else_=now)
    result = db.execute(
        update(models.Token)
        .where(models.Token.token_address == token_address)
        .values(
            pinned_until=base + hours * HOUR_MS,
            amount=models.Token.amount + 1,
            total_amount=models.Token.total_amount + 1,
            boosted=now,
            revision=models.Token.revision + 1,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


class TokenStore:
    def __init__(self, session_factory: sessionmaker, clock: Callable[[], int] = now_ms):
        self.session_factory = session_factory
        self.clock = clock

    def upsert(self, record: schemas.TokenRecord) -> Optional[UpsertResult]:
        """
        Inserts or merges a normalized token record in one statement.

        date_added is kept from the first insert and pinned_until is never
        touched here; total_amount only moves up. Returns None when nothing
        was written.
        """
        values = record.model_dump()
        values["date_added"] = self.clock()
        values["pinned_until"] = 0
        values["revision"] = 0

        with self.session_factory() as db:
            try:
                insert = dialect_insert(db)
                table = models.Token.__table__
                stmt = insert(table).values(**values)

                set_ = {column: stmt.excluded[column] for column in UPDATE_COLUMNS}
                set_["total_amount"] = case(
                    (stmt.excluded.total_amount > table.c.total_amount, stmt.excluded.total_amount),
                    else_=table.c.total_amount,
                )
                set_["revision"] = table.c.revision + 1

                stmt = stmt.on_conflict_do_update(
                    index_elements=[table.c.token_address], set_=set_
                ).returning(*table.c)

                row = db.execute(stmt).mappings().first()
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                logger.exception("Error upserting token %s", record.token_address)
                return None

        if row is None:
            return None
        return UpsertResult(created=row["revision"] == 0, token=schemas.Token.model_validate(dict(row)))

    def get(self, token_address: str) -> Optional[schemas.Token]:
        with self.session_factory() as db:
            try:
                token = db.get(models.Token, token_address)
            except SQLAlchemyError:
                logger.exception("Error selecting token %s", token_address)
                return None
            if token is None:
                return None
            return schemas.Token.model_validate(token)

    def list_all(self, sort_key: str = "boosted", pinned_first_at: Optional[int] = None) -> Optional[List[schemas.Token]]:
        """All tokens, largest sort_key first; currently pinned tokens lead when pinned_first_at is given."""
        column = SORT_KEYS.get(sort_key)
        if column is None:
            raise ValueError(f"Unknown sort key {sort_key}")

        order_by = [column.desc(), models.Token.token_address]
        if pinned_first_at is not None:
            order_by.insert(0, case((models.Token.pinned_until > pinned_first_at, 1), else_=0).desc())

        with self.session_factory() as db:
            try:
                tokens = db.execute(select(models.Token).order_by(*order_by)).scalars().all()
            except SQLAlchemyError:
                logger.exception("Error selecting all tokens")
                return None
            return [schemas.Token.model_validate(token) for token in tokens]

    def get_boost_amounts(self, token_address: str) -> Optional[schemas.BoostAmounts]:
        with self.session_factory() as db:
            try:
                row = db.execute(
                    select(models.Token.amount, models.Token.total_amount)
                    .where(models.Token.token_address == token_address)
                ).first()
            except SQLAlchemyError:
                logger.exception("Error getting boost amounts for %s", token_address)
                return None

        if row is None:
            return None
        return schemas.BoostAmounts(amount=row.amount or 0, total_amount=row.total_amount or 0)

    def refresh_market(self, token_address: str, values: dict) -> bool:
        """Overwrites market columns only; boost counters, timestamps and the pin are left alone."""
        values = {column: value for column, value in values.items() if column in MARKET_COLUMNS}
        if not values:
            return False
        if "links" in values:
            values["links"] = [schemas.TokenLink.model_validate(link).model_dump() for link in values["links"]]

        with self.session_factory() as db:
            try:
                result = db.execute(
                    update(models.Token)
                    .where(models.Token.token_address == token_address)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                logger.exception("Error refreshing market data for %s", token_address)
                return False
        return result.rowcount == 1

    def count_pinned(self) -> int:
        with self.session_factory() as db:
            try:
                return pinned_count(db, self.clock())
            except SQLAlchemyError:
                logger.exception("Error counting pinned tokens")
                return 0

    def list_lapsed_pins(self, since: int, until: int) -> List[str]:
        """Addresses whose pin ran out in (since, until]."""
        with self.session_factory() as db:
            try:
                return list(db.execute(
                    select(models.Token.token_address)
                    .where(models.Token.pinned_until > since)
                    .where(models.Token.pinned_until <= until)
                ).scalars())
            except SQLAlchemyError:
                logger.exception("Error selecting lapsed pins")
                return []

    def purge_stale(self, max_age_ms: int) -> Optional[List[schemas.DeletedToken]]:
        """Deletes tokens not boosted within max_age_ms, and their votes. Pinned tokens are kept."""
        now = self.clock()
        cutoff = now - max_age_ms

        with self.session_factory() as db:
            try:
                stale = db.execute(
                    select(models.Token.token_address, models.Token.token_name, models.Token.token_symbol)
                    .where(models.Token.boosted < cutoff)
                    .where(models.Token.pinned_until <= now)
                ).all()
                addresses = [row.token_address for row in stale]

                if addresses:
                    db.execute(delete(models.Vote).where(models.Vote.token_address.in_(addresses)))
                    db.execute(delete(models.Token).where(models.Token.token_address.in_(addresses)))
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                logger.exception("Error purging stale tokens")
                return None

        if addresses:
            logger.info("Deleted %d tokens not boosted in the last %.1f hours", len(addresses), max_age_ms / HOUR_MS)

        return [
            schemas.DeletedToken(token_address=row.token_address, token_name=row.token_name, token_symbol=row.token_symbol)
            for row in stale
        ]
