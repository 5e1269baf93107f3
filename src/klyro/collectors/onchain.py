"""On-chain activity collector: transfer history per chain plus hackathon history."""

from __future__ import annotations

import logging
from typing import Sequence

import httpx

from klyro.models import StageName

from .alchemy import AlchemyRPC
from .base import BaseCollector, is_testnet
from .hackathon import HackathonCollector

logger = logging.getLogger(__name__)

RECENT_TRANSFERS = 50
BASE_CATEGORIES = ["external", "erc20", "erc721", "erc1155"]


def categories_for(chain: str) -> list[str]:
    # internal transfers are not indexed on Sepolia or Base
    if "sepolia" in chain or chain.startswith("base-"):
        return list(BASE_CATEGORIES)
    return BASE_CATEGORIES + ["internal"]


def _empty_stats() -> dict:
    return {"external": 0, "internal": 0, "erc20": 0, "nft": 0, "total": 0}


def tally(transfers: list[dict]) -> dict:
    stats = _empty_stats()
    for t in transfers:
        category = t.get("category")
        if category in ("erc721", "erc1155", "specialnft"):
            stats["nft"] += 1
        elif category in stats:
            stats[category] += 1
        stats["total"] += 1
    return stats


def _add(into: dict, other: dict) -> None:
    for key, value in other.items():
        into[key] = into.get(key, 0) + value


class OnchainCollector(BaseCollector):
    stage = StageName.ONCHAIN_DATA
    source = "alchemy"

    def __init__(self, rpc: AlchemyRPC, chains: Sequence[str], *,
                 hackathons: HackathonCollector | None = None, timeout: float = 30.0):
        self.rpc = rpc
        self.chains = tuple(chains)
        self.hackathons = hackathons or HackathonCollector(rpc=rpc)
        self.timeout = timeout

    async def collect(self, subject_key: str, addresses: Sequence[str]) -> dict:
        result = {
            "transactionStats": {"mainnet": _empty_stats(), "testnet": _empty_stats()},
            "byChain": {},
        }
        if addresses and self.chains:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                for chain in self.chains:
                    transfers = []
                    for address in addresses:
                        transfers.extend(await self._history(client, chain, address))
                    stats = tally(transfers)
                    _add(result["transactionStats"]["testnet" if is_testnet(chain) else "mainnet"], stats)
                    transfers.sort(key=lambda t: (t.get("metadata") or {}).get("blockTimestamp") or "",
                                   reverse=True)
                    result["byChain"][chain] = {
                        "stats": stats,
                        "recentTransfers": [_slim(t) for t in transfers[:RECENT_TRANSFERS]],
                    }

        result["hackathon"] = await self.hackathons.collect(subject_key, addresses)
        logger.info("Collected on-chain history for %s: %d mainnet txs",
                    subject_key, result["transactionStats"]["mainnet"]["total"])
        return result

    async def _history(self, client, chain: str, address: str) -> list[dict]:
        categories = categories_for(chain)
        outgoing = await self.rpc.asset_transfers(
            client, chain, fromBlock="0x0", toBlock="latest", fromAddress=address,
            category=categories, withMetadata=True, excludeZeroValue=False,
        )
        incoming = await self.rpc.asset_transfers(
            client, chain, fromBlock="0x0", toBlock="latest", toAddress=address,
            category=categories, withMetadata=True, excludeZeroValue=False,
        )
        return outgoing + incoming


def _slim(t: dict) -> dict:
    return {
        "hash": t.get("hash"),
        "from": t.get("from"),
        "to": t.get("to"),
        "value": t.get("value"),
        "asset": t.get("asset"),
        "category": t.get("category"),
        "timestamp": (t.get("metadata") or {}).get("blockTimestamp"),
    }
