# explorer.py — read-only client for the Azorescan (Etherscan-style) explorer API

import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx

from settings import EXPLORER_URLS, NATIVE_DECIMALS
from snapshots import Network, format_amount, scale_raw

logger = logging.getLogger("balance_guard")


class ExplorerError(Exception):
    """The explorer answered, but not with a usable balance payload."""


class ExplorerClient:
    """
    ChainClient implementation. Two calls per fetch:
      ?module=account&action=balance&address=<addr>&tag=latest   -> native wei
      ?module=account&action=tokenlist&address=<addr>            -> ERC-20 list
    """

    def __init__(
        self,
        base_urls: Optional[Dict[str, str]] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_urls = dict(base_urls or EXPLORER_URLS)
        self.timeout = float(timeout)
        self._client = client
        self._owns_client = client is None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def base_url(self, network: Network) -> str:
        network = Network(network)
        url = self.base_urls.get(network.value)
        if not url:
            raise ExplorerError(f"No explorer configured for {network.value}")
        return url

    async def _get(self, network: Network, params: Dict[str, str]) -> Dict[str, Any]:
        resp = await self._http().get(self.base_url(network), params=params)
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, dict):
            raise ExplorerError(f"Unexpected explorer response: {data!r}")
        return data

    async def get_native_balance(self, address: str, network: Network) -> str:
        data = await self._get(
            network,
            {"module": "account", "action": "balance", "address": address, "tag": "latest"},
        )
        if str(data.get("status")) != "1":
            raise ExplorerError(f"Balance API error: {data.get('message') or 'Unknown error'}")
        return str(data.get("result", "0"))

    async def get_token_list(self, address: str, network: Network) -> List[Dict[str, Any]]:
        data = await self._get(
            network,
            {"module": "account", "action": "tokenlist", "address": address},
        )
        if str(data.get("status")) != "1":
            if data.get("message") == "No tokens found":
                return []
            raise ExplorerError(f"Tokens API error: {data.get('message') or 'Unknown error'}")
        result = data.get("result") or []
        if not isinstance(result, list):
            raise ExplorerError("Token list result is not a list")
        return [t for t in result if isinstance(t, dict)]

    async def fetch_balances(self, address: str, network: Network) -> Dict[str, Any]:
        """
        Returns {"native": "<decimal>", "tokens": [{"symbol", "decimals", "balanceRaw"}]}.
        Raises on any transport or API error; callers decide how to degrade.
        """
        native_wei, token_list = await asyncio.gather(
            self.get_native_balance(address, network),
            self.get_token_list(address, network),
        )
        native: Decimal = scale_raw(native_wei, NATIVE_DECIMALS)
        tokens = [
            {
                "symbol": t.get("symbol"),
                "decimals": t.get("decimals"),
                "balanceRaw": str(t.get("balance") or "0"),
            }
            for t in token_list
        ]
        logger.debug(f"Explorer {Network(network).value}: {address} -> {len(tokens)} tokens")
        return {"native": format_amount(native), "tokens": tokens}

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
