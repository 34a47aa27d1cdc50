import asyncio
import json
import logging
from typing import Any, List, Optional

import aiohttp
from pydantic import ValidationError

import schemas

logger = logging.getLogger(__name__)


def parse_boosts(payload: Any) -> Optional[List[schemas.BoostEvent]]:
    """Validates a boosts listing; invalid entries are dropped, a non-list payload is rejected."""
    if not isinstance(payload, list):
        return None

    boosts = []
    for entry in payload:
        try:
            boosts.append(schemas.BoostEvent.model_validate(entry))
        except ValidationError as e:
            logger.debug("Dropping invalid boost entry %r: %s", entry, e)
    return boosts


def parse_detail(payload: Any) -> Optional[schemas.TokenDetail]:
    if not isinstance(payload, dict):
        return None
    try:
        return schemas.TokenDetail.model_validate(payload)
    except ValidationError as e:
        logger.warning("Invalid token detail payload: %s", e)
        return None


class DexscreenerClient:
    def __init__(self, boosts_url: str, token_url: str, rugcheck_url: str, timeout: float = 10.0):
        self.boosts_url = boosts_url
        self.token_url = token_url
        self.rugcheck_url = rugcheck_url
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.session: Optional[aiohttp.ClientSession] = None

    async def get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
        return self.session

    async def close(self):
        if self.session is not None and not self.session.closed:
            await self.session.close()

    async def fetch(self, url: str) -> Optional[Any]:
        session = await self.get_session()
        try:
            async with session.get(url) as response:
                response.raise_for_status()
                return json.loads(await response.text())
        except asyncio.TimeoutError:
            logger.warning("Timed out fetching %s", url)
        except (aiohttp.ClientError, json.JSONDecodeError) as e:
            logger.warning("Failed to fetch %s: %s", url, e)
        return None

    async def fetch_boosts(self) -> Optional[List[schemas.BoostEvent]]:
        payload = await self.fetch(self.boosts_url)
        if payload is None:
            return None

        boosts = parse_boosts(payload)
        if boosts is None:
            logger.warning("Boosts endpoint returned %s instead of a list", type(payload).__name__)
        return boosts

    async def fetch_detail(self, token_address: str) -> Optional[schemas.TokenDetail]:
        payload = await self.fetch(self.token_url + token_address)
        if payload is None:
            return None
        return parse_detail(payload)

    async def fetch_rug_report(self, token_address: str) -> Optional[schemas.RugReport]:
        payload = await self.fetch(self.rugcheck_url + token_address + "/report/summary")
        if not isinstance(payload, dict):
            return None
        try:
            return schemas.RugReport.model_validate(payload)
        except ValidationError as e:
            logger.warning("Invalid rug report for %s: %s", token_address, e)
            return None
