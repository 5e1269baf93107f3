"""Minimal Alchemy client (JSON-RPC plus the NFT API) shared by the on-chain collectors."""

from __future__ import annotations

from typing import Any, Optional, Sequence

import httpx

from klyro.config import KeyRing
from klyro.errors import ConfigurationError, UpstreamError

from .base import check_response, parse_json

ALCHEMY_URL = "https://{chain}.g.alchemy.com/v2/{key}"
ALCHEMY_NFT_URL = "https://{chain}.g.alchemy.com/nft/v3/{key}"
MAX_TRANSFER_PAGES = 3
MAX_NFT_PAGES = 3
PAGE_SIZE = "0x3e8"  # 1000, the API maximum


class AlchemyRPC:
    source = "alchemy"

    def __init__(self, keys: KeyRing, *, url_template: str = ALCHEMY_URL,
                 nft_url_template: str = ALCHEMY_NFT_URL):
        self.keys = keys
        self.url_template = url_template
        self.nft_url_template = nft_url_template

    def _key(self) -> str:
        key = self.keys.next()
        if not key:
            raise ConfigurationError("ALCHEMY_API_KEYS is not configured")
        return key

    def url(self, chain: str) -> str:
        return self.url_template.format(chain=chain, key=self._key())

    def nft_url(self, chain: str) -> str:
        return self.nft_url_template.format(chain=chain, key=self._key())

    async def call(self, client: httpx.AsyncClient, chain: str, method: str, params: list) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        try:
            resp = await client.post(self.url(chain), json=payload)
        except httpx.HTTPError as e:
            raise UpstreamError(self.source, f"{method} on {chain}: {type(e).__name__}: {e}") from e
        check_response(resp, self.source)
        body = parse_json(resp, self.source)
        if not isinstance(body, dict):
            raise UpstreamError(self.source, f"{method} on {chain}: unexpected payload")
        if body.get("error"):
            err = body["error"]
            msg = err.get("message", str(err)) if isinstance(err, dict) else str(err)
            raise UpstreamError(self.source, f"{method} on {chain}: {msg}")
        return body.get("result")

    async def block_number(self, client: httpx.AsyncClient, chain: str) -> int:
        result = await self.call(client, chain, "eth_blockNumber", [])
        try:
            return int(result, 16)
        except (TypeError, ValueError):
            raise UpstreamError(self.source, f"eth_blockNumber on {chain}: bad result {result!r}") from None

    async def asset_transfers(self, client: httpx.AsyncClient, chain: str, *,
                              max_pages: int = MAX_TRANSFER_PAGES, **filters) -> list[dict]:
        """alchemy_getAssetTransfers, following pageKey for at most ``max_pages`` pages."""
        params = {"maxCount": PAGE_SIZE, **filters}
        transfers: list[dict] = []
        page_key: Optional[str] = None
        for _ in range(max_pages):
            if page_key:
                params["pageKey"] = page_key
            result = await self.call(client, chain, "alchemy_getAssetTransfers", [params])
            if not isinstance(result, dict):
                raise UpstreamError(self.source, f"alchemy_getAssetTransfers on {chain}: bad result")
            transfers.extend(result.get("transfers") or [])
            page_key = result.get("pageKey")
            if not page_key:
                break
        return transfers

    async def nfts_for_owner(self, client: httpx.AsyncClient, chain: str, owner: str,
                             contracts: Sequence[str], *, max_pages: int = MAX_NFT_PAGES) -> list[dict]:
        """NFT API getNFTsForOwner, limited to ``contracts``, with metadata."""
        params: dict[str, Any] = {
            "owner": owner,
            "contractAddresses[]": list(contracts),
            "withMetadata": "true",
            "pageSize": 100,
        }
        owned: list[dict] = []
        for _ in range(max_pages):
            try:
                resp = await client.get(f"{self.nft_url(chain)}/getNFTsForOwner", params=params)
            except httpx.HTTPError as e:
                raise UpstreamError(self.source, f"getNFTsForOwner on {chain}: {type(e).__name__}: {e}") from e
            check_response(resp, self.source)
            body = parse_json(resp, self.source)
            if not isinstance(body, dict) or not isinstance(body.get("ownedNfts"), list):
                raise UpstreamError(self.source, f"getNFTsForOwner on {chain}: unexpected payload")
            owned.extend(body["ownedNfts"])
            page_key = body.get("pageKey")
            if not page_key:
                break
            params["pageKey"] = page_key
        return owned
