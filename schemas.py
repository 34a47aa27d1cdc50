from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Dict, List, Literal, Optional, Union
from enum import Enum

def to_camel(name: str) -> str:
    # str.title() would turn volume24h into volume24H
    first, *rest = name.split("_")
    return first + "".join(word[:1].upper() + word[1:] for word in rest)

class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

# dexscreener payloads

class BoostLink(WireModel):
    type: Optional[str] = None
    label: Optional[str] = None
    url: Optional[str] = None

class BoostEvent(WireModel):
    token_address: str
    chain_id: str
    amount: int
    total_amount: int
    url: Optional[str] = None
    icon: Optional[str] = None
    header: Optional[str] = None
    open_graph: Optional[str] = None
    description: Optional[str] = None
    links: Optional[List[BoostLink]] = None

    @field_validator("token_address", "chain_id")
    @classmethod
    def not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("amount", "total_amount", mode="before")
    @classmethod
    def numeric(cls, value):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("must be a number")
        return int(value)

class PairToken(WireModel):
    address: Optional[str] = None
    name: Optional[str] = None
    symbol: Optional[str] = None

class PairLiquidity(WireModel):
    usd: Optional[float] = None

class PairVolume(WireModel):
    h24: Optional[float] = None
    h6: Optional[float] = None
    h1: Optional[float] = None
    m5: Optional[float] = None

class PairWebsite(WireModel):
    label: Optional[str] = None
    url: Optional[str] = None

class PairSocial(WireModel):
    type: Optional[str] = None
    url: Optional[str] = None

class PairInfo(WireModel):
    image_url: Optional[str] = None
    header: Optional[str] = None
    open_graph: Optional[str] = None
    description: Optional[str] = None
    websites: List[PairWebsite] = []
    socials: List[PairSocial] = []

    @field_validator("websites", "socials", mode="before")
    @classmethod
    def null_list(cls, value):
        return [] if value is None else value

class DexPair(WireModel):
    chain_id: Optional[str] = None
    dex_id: Optional[str] = None
    url: Optional[str] = None
    pair_address: Optional[str] = None
    base_token: PairToken = PairToken()
    price_usd: Optional[str] = None
    liquidity: Optional[PairLiquidity] = None
    volume: Optional[PairVolume] = None
    market_cap: Optional[float] = None
    pair_created_at: Optional[int] = None
    info: Optional[PairInfo] = None

class TokenDetail(WireModel):
    pairs: List[DexPair] = []

    @field_validator("pairs", mode="before")
    @classmethod
    def null_pairs(cls, value):
        return [] if value is None else value

class RugRisk(WireModel):
    name: str
    description: str = ""
    level: str = ""
    value: Optional[str] = None
    score: Optional[float] = None

class RugReport(WireModel):
    token_program: Optional[str] = None
    token_type: Optional[str] = None
    risks: List[RugRisk] = []
    score: Optional[float] = None

# stored state

class TokenLink(WireModel):
    type: str
    url: str

class TokenRecord(WireModel):
    token_address: str
    token_name: str
    token_symbol: str
    chain_id: str
    url: str = ""
    icon: str = ""
    header: str = ""
    open_graph: str = ""
    description: str = ""
    links: List[TokenLink] = []
    market_cap: float = 0
    current_price: float = 0
    liquidity: float = 0
    volume24h: float = 0
    volume6h: float = 0
    volume1h: float = 0
    pairs_available: int = 0
    dex_pair: str = ""
    pair_created_at: int = 0
    amount: int = 0
    total_amount: int = 0
    boosted: int

class Token(TokenRecord):
    date_added: int
    pinned_until: int = 0

class DeletedToken(WireModel):
    token_address: str
    token_name: Optional[str] = None
    token_symbol: Optional[str] = None

class BoostAmounts(WireModel):
    amount: int
    total_amount: int

# votes

class VoteCounts(WireModel):
    upvotes: int = 0
    downvotes: int = 0

class VoteRequest(WireModel):
    token_address: str = Field(min_length=1)
    vote: Literal[1, -1]
    voter_id: str = Field(min_length=1, max_length=128)

class UserVote(WireModel):
    user_vote: Optional[int] = None
    votes: VoteCounts

# pin orders

class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"
    COMPLETED = "completed"
    REFUND_NEEDED = "refund_needed"

class PinOrderRequest(WireModel):
    token_address: str = Field(min_length=1)
    hours: int = Field(gt=0)
    cost: float = Field(gt=0)

class PinOrderCreated(WireModel):
    order_id: int
    payment_address: str
    expires_at: int

class PinOrder(WireModel):
    id: int
    token_address: str
    hours: int
    cost: float
    status: OrderStatus
    payment_address: str
    created_at: int
    expires_at: int
    paid_at: Optional[int] = None

class PinPricing(WireModel):
    tiers: Dict[int, float]
    max_pinned: int
    currently_pinned: int

# push channel

class EventType(str, Enum):
    NEW_TOKEN = "NEW_TOKEN"
    TOKEN_UPDATE = "update"
    BOOST_UPDATE = "BOOST_UPDATE"
    VOTE_UPDATE = "VOTE_UPDATE"
    PIN_UPDATE = "PIN_UPDATE"
    PIN_EXPIRED = "PIN_EXPIRED"
    TOKEN_DELETED = "TOKEN_DELETED"

class Event(WireModel):
    type: EventType
    token_address: Optional[str] = None
    token: Optional[Union[Token, DeletedToken]] = None
    votes: Optional[VoteCounts] = None
    pinned: Optional[bool] = None
    order_id: Optional[int] = None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)
