from sqlalchemy import Column, String, BigInteger, Float, Integer, Text, JSON, UniqueConstraint, CheckConstraint, Index
from sqlalchemy.orm import declarative_base

Base = declarative_base()

class Token(Base):
    __tablename__ = "tokens"

    token_address = Column(String(64), primary_key=True)
    token_name = Column(Text)
    token_symbol = Column(Text)
    url = Column(Text)
    chain_id = Column(String(32))
    icon = Column(Text)
    header = Column(Text)
    open_graph = Column(Text)
    description = Column(Text)
    links = Column(JSON, default=list)
    market_cap = Column(Float, default=0)
    current_price = Column(Float, default=0)
    liquidity = Column(Float, default=0)
    volume24h = Column(Float, default=0)
    volume6h = Column(Float, default=0)
    volume1h = Column(Float, default=0)
    pairs_available = Column(Integer, default=0)
    dex_pair = Column(String(64))
    pair_created_at = Column(BigInteger, default=0)
    amount = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False, default=0)
    boosted = Column(BigInteger, index=True)
    date_added = Column(BigInteger, nullable=False)
    pinned_until = Column(BigInteger, nullable=False, default=0, index=True)
    # 0 on insert, +1 on every update
    revision = Column(Integer, nullable=False, default=0)

class Vote(Base):
    __tablename__ = "votes"
    __table_args__ = (
        UniqueConstraint("token_address", "voter_id"),
        CheckConstraint("vote IN (1, -1)"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    token_address = Column(String(64), nullable=False, index=True)
    voter_id = Column(String(128), nullable=False)
    vote = Column(Integer, nullable=False)
    timestamp = Column(BigInteger, nullable=False)

class PinOrder(Base):
    __tablename__ = "pin_orders"
    __table_args__ = (
        Index("ix_pin_orders_status_expires_at", "status", "expires_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    token_address = Column(String(64), nullable=False)
    hours = Column(Integer, nullable=False)
    cost = Column(Float, nullable=False)
    payment_address = Column(String(64), nullable=False, unique=True)
    payment_secret = Column(Text, nullable=False)
    status = Column(String(16), nullable=False, default="pending")
    created_at = Column(BigInteger, nullable=False)
    expires_at = Column(BigInteger, nullable=False)
    paid_at = Column(BigInteger, nullable=True)
    requester = Column(String(128), nullable=False, default="unknown")
