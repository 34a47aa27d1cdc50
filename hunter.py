import asyncio
import logging
from typing import Dict, List, Optional

from fastapi.concurrency import run_in_threadpool

import schemas
from broadcaster import Broadcaster
from config import Settings
from dexscreener_client import DexscreenerClient
from token_store import TokenStore, UpsertResult, now_ms

logger = logging.getLogger(__name__)

SOCIAL_TYPES = ("telegram", "twitter")


def extract_links(info: Optional[schemas.PairInfo]) -> List[schemas.TokenLink]:
    """At most one website, then every telegram / twitter link with a normalized type."""
    if info is None:
        return []

    links = []
    for website in info.websites:
        if website.url and "http" in website.url:
            links.append(schemas.TokenLink(type="website", url=website.url))
            break

    for social in info.socials:
        if not social.url:
            continue
        social_type = (social.type or "").lower()
        url = social.url.lower()

        if social_type not in SOCIAL_TYPES:
            if "t.me" in url:
                social_type = "telegram"
            elif "twitter.com" in url:
                social_type = "twitter"
            else:
                continue
        links.append(schemas.TokenLink(type=social_type, url=social.url))

    return links


def select_pair(detail: schemas.TokenDetail, dex_id: str) -> Optional[schemas.DexPair]:
    for pair in detail.pairs:
        if pair.dex_id == dex_id:
            return pair
    return None


def market_fields(detail: schemas.TokenDetail, pair: schemas.DexPair) -> dict:
    """The pair-derived columns a pin refresh may overwrite."""
    liquidity = pair.liquidity or schemas.PairLiquidity()
    volume = pair.volume or schemas.PairVolume()

    try:
        current_price = float(pair.price_usd) if pair.price_usd else 0.0
    except ValueError:
        current_price = 0.0

    return dict(
        links=extract_links(pair.info),
        market_cap=pair.market_cap or 0,
        current_price=current_price,
        liquidity=liquidity.usd or 0,
        volume24h=volume.h24 or 0,
        volume6h=volume.h6 or 0,
        volume1h=volume.h1 or 0,
        pairs_available=len(detail.pairs),
    )


def build_token_record(
    boost: schemas.BoostEvent,
    detail: schemas.TokenDetail,
    dex_id: str,
    boosted: int,
) -> Optional[schemas.TokenRecord]:
    """Merges the boost event with the tracked dex pair; None when the token has no such pair."""
    pair = select_pair(detail, dex_id)
    if pair is None:
        return None

    info = pair.info or schemas.PairInfo()
    return schemas.TokenRecord(
        token_address=boost.token_address,
        token_name=pair.base_token.name or boost.token_address,
        token_symbol=pair.base_token.symbol or "N/A",
        chain_id=boost.chain_id,
        url=boost.url or "",
        icon=boost.icon or "",
        header=info.header or "",
        open_graph=info.open_graph or "",
        description=boost.description or "",
        dex_pair=dex_id,
        pair_created_at=pair.pair_created_at or 0,
        amount=boost.amount,
        total_amount=boost.total_amount,
        boosted=boosted,
        **market_fields(detail, pair),
    )


def format_age(timestamp_ms: int, now: int) -> str:
    if not timestamp_ms:
        return "N/A"
    minutes = max(0, now - timestamp_ms) // 60000
    if minutes < 60:
        return f"{minutes} minutes ago"
    if minutes < 60 * 24:
        return f"{minutes // 60} hours ago"
    return f"{minutes // (60 * 24)} days ago"


class BoostHunter:
    """
    Polls the latest boosts and keeps the token table in step with them.

    A token is only refetched when its lifetime boost count differs from the
    stored one; every candidate of a tick is processed concurrently and the
    tick ends once all of them have settled.
    """

    def __init__(
        self,
        settings: Settings,
        feed_client: DexscreenerClient,
        token_store: TokenStore,
        broadcaster: Broadcaster,
        clock=now_ms,
    ):
        self.settings = settings
        self.feed_client = feed_client
        self.token_store = token_store
        self.broadcaster = broadcaster
        self.clock = clock
        self.first_run = True

    def is_tracked(self, boost: schemas.BoostEvent) -> bool:
        if boost.chain_id.lower() not in [chain.lower() for chain in self.settings.chains_to_track]:
            return False

        address = boost.token_address.strip().lower()
        if any(address.endswith(suffix.lower()) for suffix in self.settings.denied_address_suffixes):
            return False
        allowed = self.settings.allowed_address_suffixes
        if allowed and not any(address.endswith(suffix.lower()) for suffix in allowed):
            return False
        return True

    def candidates(self, boosts: List[schemas.BoostEvent]) -> List[schemas.BoostEvent]:
        # the feed can list a token more than once; keep its highest count
        latest: Dict[str, schemas.BoostEvent] = {}
        for boost in boosts:
            if not self.is_tracked(boost):
                continue
            seen = latest.get(boost.token_address)
            if seen is None or boost.total_amount > seen.total_amount:
                latest[boost.token_address] = boost
        return list(latest.values())

    def has_changed(self, boost: schemas.BoostEvent) -> bool:
        # stored totals only move up, and a pin adds to them, so a lower feed total is not news
        stored = self.token_store.get_boost_amounts(boost.token_address)
        return stored is None or boost.total_amount > stored.total_amount

    async def tick(self):
        boosts = await self.feed_client.fetch_boosts()
        if boosts is None:
            logger.info("No new token boosts received.")
        else:
            candidates = self.candidates(boosts)
            logger.debug("Received %d boosts, %d tracked", len(boosts), len(candidates))
            await asyncio.gather(*[self.process(boost) for boost in candidates])
        self.first_run = False

    async def process(self, boost: schemas.BoostEvent) -> Optional[UpsertResult]:
        try:
            return await self._process(boost)
        except Exception:
            logger.exception("Failed to process boost for %s", boost.token_address)
            return None

    async def _process(self, boost: schemas.BoostEvent) -> Optional[UpsertResult]:
        if not await run_in_threadpool(self.has_changed, boost):
            return None

        detail = await self.feed_client.fetch_detail(boost.token_address)
        if detail is None:
            return None

        record = build_token_record(boost, detail, self.settings.dex_to_track, self.clock())
        if record is None:
            logger.debug("No %s pair for %s", self.settings.dex_to_track, boost.token_address)
            return None

        result = await run_in_threadpool(self.token_store.upsert, record)
        if result is None:
            return None

        event_type = schemas.EventType.NEW_TOKEN if result.created else schemas.EventType.TOKEN_UPDATE
        await self.broadcaster.publish(schemas.Event(type=event_type, token=result.token))

        if not self.first_run and result.token.total_amount >= self.settings.min_boost_amount:
            await self.log_notable(result.token)
        return result

    async def log_notable(self, token: schemas.Token):
        ticker = "🔥" if token.total_amount >= self.settings.golden_boost_amount else "⚡"
        pump_fun = "Yes" if token.token_address.strip().lower().endswith("pump") else "No"

        lines = [
            "[ Boost Information ]",
            f"✅ {token.amount} boosts added for {token.token_name} ({token.token_symbol}).",
            f"{ticker} Boost Amount: {token.total_amount}",
            "[ Token Information ]",
            f"This token has {len(token.links)} socials.",
            f"🕝 This token pair was created {format_age(token.pair_created_at, self.clock())} "
            f"and has {token.pairs_available} pairs available including {token.dex_pair}",
            f"🤑 Current Price: ${token.current_price}",
            f"📦 Current Mkt Cap: ${token.market_cap}",
            f"💦 Current Liquidity: ${token.liquidity}",
            f"🚀 Pumpfun token: {pump_fun}",
        ]

        if self.settings.rug_check_enabled:
            report = await self.feed_client.fetch_rug_report(token.token_address)
            if report is not None:
                lines.append("[ Rugcheck Result   ]")
                icons = {"danger": "🔴", "warn": "🟡"}
                for risk in report.risks:
                    lines.append(f"{icons.get(risk.level, '⚪')} {risk.name}: {risk.description}")
                if not report.risks:
                    lines.append("🟢 No risks found")

        lines.append(f"👀 View on Dex https://dexscreener.com/{token.chain_id}/{token.token_address}")
        logger.info("\n".join(lines))
