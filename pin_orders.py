import asyncio
import logging
from typing import List, Optional

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

import models
import schemas
from broadcaster import Broadcaster
from config import Settings
from dexscreener_client import DexscreenerClient
from hunter import market_fields, select_pair
from solana_client import SolanaRpcClient, generate_payment_keypair
from token_store import TokenStore, extend_pin, is_pinned, now_ms, pinned_count

logger = logging.getLogger(__name__)

MINUTE_MS = 60 * 1000
OrderStatus = schemas.OrderStatus


class PinOrderError(ValueError):
    """A pin request the current policy refuses; the message is shown to the requester."""


class UnknownTokenError(PinOrderError):
    pass


class PinOrderService:
    """
    One-time deposit addresses for pins, and the poller that settles them.

    pending -> paid -> completed, pending -> expired, or
    pending -> paid -> refund_needed when the pin can no longer be granted.
    The paid transition, the pin itself and the completed transition are a
    single transaction, so an order is applied at most once.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker,
        token_store: TokenStore,
        payment_client: SolanaRpcClient,
        broadcaster: Broadcaster,
        clock=now_ms,
        feed_client: Optional[DexscreenerClient] = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.token_store = token_store
        self.payment_client = payment_client
        self.broadcaster = broadcaster
        self.clock = clock
        self.feed_client = feed_client
        self.poll_lock = asyncio.Lock()
        self.last_pin_sweep = clock()

    def check_price(self, hours: int, cost: float):
        price = self.settings.price_for(hours)
        if price is None:
            tiers = ", ".join(str(h) for h in sorted(self.settings.pin_pricing))
            raise PinOrderError(f"Pins are sold for {tiers} hours, not {hours}")
        if abs(cost - price) >= self.settings.payment_tolerance:
            raise PinOrderError(f"A {hours} hour pin costs {price} SOL")

    def create(self, token_address: str, hours: int, cost: float, requester: str = "unknown") -> schemas.PinOrderCreated:
        self.check_price(hours, cost)

        with self.session_factory() as db:
            now = self.clock()
            if db.get(models.Token, token_address) is None:
                raise UnknownTokenError("Token not found")

            if not is_pinned(db, token_address, now) and pinned_count(db, now) >= self.settings.max_pinned_tokens:
                raise PinOrderError("Maximum number of pinned tokens reached, try again later")

            payment_address, payment_secret = generate_payment_keypair()
            order = models.PinOrder(
                token_address=token_address,
                hours=hours,
                cost=cost,
                payment_address=payment_address,
                payment_secret=payment_secret,
                status=OrderStatus.PENDING.value,
                created_at=now,
                expires_at=now + self.settings.order_window_minutes * MINUTE_MS,
                requester=requester,
            )
            try:
                db.add(order)
                db.commit()
                db.refresh(order)
            except SQLAlchemyError:
                db.rollback()
                logger.exception("Error creating pin order for %s", token_address)
                raise

        logger.info("[Payment System] Order %s created for %s (%s hours, %s SOL)", order.id, token_address, hours, cost)
        return schemas.PinOrderCreated(order_id=order.id, payment_address=order.payment_address, expires_at=order.expires_at)

    def status(self, order_id: int) -> Optional[schemas.PinOrder]:
        with self.session_factory() as db:
            try:
                order = db.get(models.PinOrder, order_id)
            except SQLAlchemyError:
                logger.exception("Error getting pin order %s", order_id)
                return None
            if order is None:
                return None
            return schemas.PinOrder.model_validate(order)

    def pending_orders(self) -> List[models.PinOrder]:
        with self.session_factory() as db:
            try:
                return list(db.execute(
                    select(models.PinOrder)
                    .where(models.PinOrder.status == OrderStatus.PENDING.value)
                    .order_by(models.PinOrder.id)
                ).scalars())
            except SQLAlchemyError:
                logger.exception("Error selecting pending orders")
                return []

    def expire(self, order_id: int) -> bool:
        with self.session_factory() as db:
            try:
                result = db.execute(
                    update(models.PinOrder)
                    .where(models.PinOrder.id == order_id)
                    .where(models.PinOrder.status == OrderStatus.PENDING.value)
                    .values(status=OrderStatus.EXPIRED.value)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                logger.exception("Error expiring order %s", order_id)
                return False
        return result.rowcount == 1

    def apply_payment(self, order: models.PinOrder) -> Optional[OrderStatus]:
        """Settles a paid order; returns its final status, or None if another cycle already did."""
        with self.session_factory() as db:
            try:
                now = self.clock()
                result = db.execute(
                    update(models.PinOrder)
                    .where(models.PinOrder.id == order.id)
                    .where(models.PinOrder.status == OrderStatus.PENDING.value)
                    .values(status=OrderStatus.PAID.value, paid_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    db.rollback()
                    return None

                final_status = OrderStatus.COMPLETED
                already_pinned = is_pinned(db, order.token_address, now)
                if not already_pinned and pinned_count(db, now) >= self.settings.max_pinned_tokens:
                    final_status = OrderStatus.REFUND_NEEDED
                elif not extend_pin(db, order.token_address, order.hours, now):
                    # token was purged while the order was pending
                    final_status = OrderStatus.REFUND_NEEDED

                db.execute(
                    update(models.PinOrder)
                    .where(models.PinOrder.id == order.id)
                    .values(status=final_status.value)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                logger.exception("Error applying payment for order %s", order.id)
                return None

        return final_status

    async def refresh_market(self, token_address: str):
        """Best effort: a pinned token is shown with fresh pair numbers when the feed answers."""
        if self.feed_client is None:
            return

        detail = await self.feed_client.fetch_detail(token_address)
        pair = select_pair(detail, self.settings.dex_to_track) if detail is not None else None
        if pair is None:
            logger.warning("[Payment System] No fresh %s pair data for %s", self.settings.dex_to_track, token_address)
            return
        await run_in_threadpool(self.token_store.refresh_market, token_address, market_fields(detail, pair))

    async def check_order(self, order: models.PinOrder, now: int):
        paid = await self.payment_client.verify_payment(order.payment_address, order.cost)

        if not paid:
            if order.expires_at <= now and await run_in_threadpool(self.expire, order.id):
                logger.info("[Payment System] Order %s has expired ❌", order.id)
            return

        logger.info("[Payment System] Order %s payment confirmed ✅", order.id)
        final_status = await run_in_threadpool(self.apply_payment, order)

        if final_status == OrderStatus.REFUND_NEEDED:
            logger.warning("[Payment System] Refund needed for order %s, %s cannot be pinned", order.id, order.token_address)
        elif final_status == OrderStatus.COMPLETED:
            logger.info("[Payment System] Token %s pinned for %s hours, order %s completed ✨", order.token_address, order.hours, order.id)
            await self.refresh_market(order.token_address)
            await self.broadcaster.publish(schemas.Event(
                type=schemas.EventType.PIN_UPDATE,
                token_address=order.token_address,
                pinned=True,
                order_id=order.id,
                token=await run_in_threadpool(self.token_store.get, order.token_address),
            ))

    async def notify_lapsed_pins(self, now: int):
        lapsed = await run_in_threadpool(self.token_store.list_lapsed_pins, self.last_pin_sweep, now)
        for token_address in lapsed:
            logger.info("[Payment System] Pin of %s has run out", token_address)
            await self.broadcaster.publish(schemas.Event(
                type=schemas.EventType.PIN_EXPIRED, token_address=token_address, pinned=False
            ))
        self.last_pin_sweep = now

    async def poll_once(self):
        async with self.poll_lock:
            now = self.clock()
            orders = await run_in_threadpool(self.pending_orders)
            if orders:
                logger.info("[Payment System] Processing %d pending orders...", len(orders))

            for order in orders:
                try:
                    await self.check_order(order, now)
                except Exception:
                    logger.exception("[Payment System] Error processing order %s", order.id)

            await self.notify_lapsed_pins(now)
