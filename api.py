from contextlib import asynccontextmanager
from fastapi import APIRouter, FastAPI, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import SQLAlchemyError
from typing import Dict, List, Optional

import json
import logging

import schemas
from broadcaster import Broadcaster
from config import Settings, load_settings
from database import get_session_factory
from dexscreener_client import DexscreenerClient
from hunter import BoostHunter
from periodic import PeriodicTask
from pin_orders import PinOrderError, PinOrderService, UnknownTokenError
from solana_client import SolanaRpcClient
from token_store import HOUR_MS, TokenStore, now_ms
from vote_store import VoteStore

logger = logging.getLogger(__name__)


class Services:
    """Everything the API and the background jobs share; built once per app."""

    def __init__(self, settings: Settings, session_factory=None, feed_client=None, payment_client=None, clock=now_ms):
        self.settings = settings
        self.clock = clock

        if session_factory is None:
            session_factory = get_session_factory(settings.database_url)
        if feed_client is None:
            feed_client = DexscreenerClient(
                settings.boosts_url, settings.token_url, settings.rugcheck_url, timeout=settings.request_timeout
            )
        if payment_client is None:
            payment_client = SolanaRpcClient(
                settings.solana_rpc_url, timeout=settings.request_timeout, tolerance=settings.payment_tolerance
            )

        self.session_factory = session_factory
        self.feed_client = feed_client
        self.payment_client = payment_client
        self.broadcaster = Broadcaster()
        self.token_store = TokenStore(session_factory, clock=clock)
        self.vote_store = VoteStore(session_factory, clock=clock)
        self.hunter = BoostHunter(settings, feed_client, self.token_store, self.broadcaster, clock=clock)
        self.pin_orders = PinOrderService(
            settings, session_factory, self.token_store, payment_client, self.broadcaster,
            clock=clock, feed_client=feed_client,
        )

        self.tasks = [
            PeriodicTask("Hunter", self.hunter.tick, settings.hunter_interval),
            PeriodicTask("Payment System", self.pin_orders.poll_once, settings.payment_poll_interval),
            PeriodicTask("Retention", self.purge_stale, settings.purge_interval),
        ]

    async def purge_stale(self):
        deleted = await run_in_threadpool(self.token_store.purge_stale, int(self.settings.retention_hours * HOUR_MS))
        for token in deleted or []:
            await self.broadcaster.publish(schemas.Event(
                type=schemas.EventType.TOKEN_DELETED, token_address=token.token_address, token=token
            ))

    def start(self):
        for task in self.tasks:
            task.start()

    async def stop(self):
        for task in self.tasks:
            await task.stop()
        await self.feed_client.close()
        await self.payment_client.close()


router = APIRouter()


def get_services(request: Request) -> Services:
    return request.app.state.services


@router.get("/")
async def root():
    return {"message": "DexBoost API is running"}


@router.get("/api/tokens", response_model=List[schemas.Token])
def get_tokens(services: Services = Depends(get_services)):
    tokens = services.token_store.list_all(services.settings.token_sort_key, pinned_first_at=services.clock())
    if tokens is None:
        raise HTTPException(status_code=500, detail="Failed to fetch tokens")
    return tokens


@router.post("/api/vote", response_model=schemas.VoteCounts)
async def post_vote(vote: schemas.VoteRequest, services: Services = Depends(get_services)):
    if await run_in_threadpool(services.token_store.get, vote.token_address) is None:
        raise HTTPException(status_code=404, detail="Token not found")

    try:
        votes = await run_in_threadpool(services.vote_store.add_vote, vote.token_address, vote.voter_id, vote.vote)
    except SQLAlchemyError:
        raise HTTPException(status_code=500, detail="Failed to save vote")

    if votes is None:
        raise HTTPException(status_code=400, detail="You have already voted for this token")

    await services.broadcaster.publish(schemas.Event(
        type=schemas.EventType.VOTE_UPDATE, token_address=vote.token_address, votes=votes
    ))
    return votes


@router.get("/api/vote/{token_address}/{voter_id}", response_model=schemas.UserVote)
def get_vote(token_address: str, voter_id: str, services: Services = Depends(get_services)):
    return schemas.UserVote(
        user_vote=services.vote_store.get_vote(token_address, voter_id),
        votes=services.vote_store.get_counts(token_address),
    )


@router.get("/api/votes", response_model=Dict[str, schemas.VoteCounts])
def get_votes(services: Services = Depends(get_services)):
    return services.vote_store.all_counts()


@router.post("/api/pin-order", response_model=schemas.PinOrderCreated)
def create_pin_order(order: schemas.PinOrderRequest, request: Request, services: Services = Depends(get_services)):
    requester = request.client.host if request.client else "unknown"
    try:
        return services.pin_orders.create(order.token_address, order.hours, order.cost, requester)
    except UnknownTokenError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PinOrderError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SQLAlchemyError:
        raise HTTPException(status_code=500, detail="Failed to create pin order")


@router.get("/api/pin-order/{order_id}", response_model=schemas.PinOrder)
def get_pin_order(order_id: int, services: Services = Depends(get_services)):
    order = services.pin_orders.status(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@router.get("/api/pin-pricing", response_model=schemas.PinPricing)
def get_pin_pricing(services: Services = Depends(get_services)):
    return schemas.PinPricing(
        tiers=services.settings.pin_pricing,
        max_pinned=services.settings.max_pinned_tokens,
        currently_pinned=services.token_store.count_pinned(),
    )


def is_ping(message: str) -> bool:
    if message.strip().lower() == "ping":
        return True
    try:
        data = json.loads(message)
    except json.JSONDecodeError:
        return False
    return isinstance(data, dict) and data.get("type") == "ping"


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    broadcaster: Broadcaster = websocket.app.state.services.broadcaster
    await broadcaster.connect(websocket)
    try:
        while True:
            message = await websocket.receive_text()
            if is_ping(message):
                await websocket.send_text(json.dumps({"type": "pong"}))
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.disconnect(websocket)


@asynccontextmanager
async def lifespan(app: FastAPI):
    services: Services = app.state.services
    if services.settings.run_background_tasks:
        services.start()
    yield
    await services.stop()


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    if settings is None:
        settings = services.settings if services is not None else load_settings()
    if services is None:
        services = Services(settings)

    app = FastAPI(
        title="DexBoost API",
        description="Boosted tokens, votes and paid pins",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.include_router(router)
    return app
