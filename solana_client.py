import aiohttp
import asyncio
import base64
import json
import logging
import random
from typing import Any, Optional, Tuple

from solders.keypair import Keypair

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000


class RpcError(Exception):
    pass


def generate_payment_keypair() -> Tuple[str, str]:
    """Returns (address, base64 secret) for a fresh one-time deposit address."""
    keypair = Keypair()
    return str(keypair.pubkey()), base64.b64encode(bytes(keypair)).decode()


def is_paid(balance: float, expected_amount: float, tolerance: float) -> bool:
    return abs(balance - expected_amount) < tolerance


class SolanaRpcClient:
    def __init__(self, rpc_url: str, timeout: float = 10.0, tolerance: float = 0.001):
        # several endpoints may be given, comma separated
        self.rpc_urls = [url.strip() for url in rpc_url.split(",") if url.strip()]
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.tolerance = tolerance
        self.session: Optional[aiohttp.ClientSession] = None

    async def get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
        return self.session

    async def close(self):
        if self.session is not None and not self.session.closed:
            await self.session.close()

    async def fetch(self, method: str, params: list) -> Any:
        rpc_url = random.choice(self.rpc_urls)
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}

        session = await self.get_session()
        async with session.post(rpc_url, json=payload) as response:
            response.raise_for_status()

            res_json = json.loads(await response.text())
            if res_json.get("error"):
                raise RpcError(json.dumps(res_json["error"]))
            return res_json.get("result")

    async def get_balance(self, address: str) -> Optional[float]:
        """Balance in SOL, or None when the node could not be asked."""
        try:
            result = await self.fetch("getBalance", [address, {"commitment": "confirmed"}])
            return int(result["value"]) / LAMPORTS_PER_SOL
        except asyncio.TimeoutError:
            logger.warning("Timed out checking balance of %s", address)
        except (aiohttp.ClientError, RpcError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Failed to check balance of %s: %s", address, e)
        return None

    async def verify_payment(self, address: str, expected_amount: float) -> bool:
        balance = await self.get_balance(address)
        if balance is None:
            return False

        paid = is_paid(balance, expected_amount, self.tolerance)
        logger.debug("Balance of %s is %s SOL, expected %s SOL, paid=%s", address, balance, expected_amount, paid)
        return paid
