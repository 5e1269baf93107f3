"""Contracts collector: contracts deployed by the subject's addresses and their usage."""

from __future__ import annotations

import logging
from typing import Sequence

import httpx

from klyro.models import StageName

from .alchemy import AlchemyRPC
from .base import BaseCollector, is_testnet
from .prices import PriceOracle

logger = logging.getLogger(__name__)

# Tokens counted towards TVL on mainnets, besides native ETH
TVL_TOKENS = {
    "base-mainnet": {
        "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913",  # USDC
        "0x4200000000000000000000000000000000000006",  # WETH
    },
    "eth-mainnet": {
        "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48",  # USDC
        "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2",  # WETH
        "0xdac17f958d2ee523a2206206994597c13d831ec7",  # USDT
    },
}


def _empty_stats() -> dict:
    return {"contracts": 0, "tvl": 0.0, "uniqueUsers": 0, "transactions": 0}


def summarize(contracts: list[dict]) -> dict:
    stats = _empty_stats()
    for c in contracts:
        stats["contracts"] += 1
        stats["tvl"] += c["tvl"]
        stats["uniqueUsers"] += c["uniqueUsers"]
        stats["transactions"] += c["totalTransactions"]
    return stats


def empty_result() -> dict:
    return {
        "byChain": {},
        "statsByChain": {},
        "stats": {"mainnet": _empty_stats(), "testnet": _empty_stats(), "total": _empty_stats()},
        "mainnetContracts": 0,
        "testnetContracts": 0,
        "totalTVL": 0.0,
        "testnetTVL": 0.0,
        "uniqueUsers": 0,
        "totalTransactions": 0,
    }


class ContractsCollector(BaseCollector):
    """Finds deployments (outgoing transfers with no ``to``), resolves contract
    addresses from receipts, then measures incoming transfers per contract.

    Deployments are searched from half the chain head onwards.
    """

    stage = StageName.CONTRACTS_DATA
    source = "alchemy"

    def __init__(self, rpc: AlchemyRPC, prices: PriceOracle, chains: Sequence[str], *,
                 timeout: float = 30.0):
        self.rpc = rpc
        self.prices = prices
        self.chains = tuple(chains)
        self.timeout = timeout

    async def collect(self, subject_key: str, addresses: Sequence[str]) -> dict:
        result = empty_result()
        if not addresses or not self.chains:
            return result

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for chain in self.chains:
                contracts = []
                head = await self.rpc.block_number(client, chain)
                start_block = hex(head // 2)
                for address in addresses:
                    contracts.extend(await self._deployed_by(client, chain, address, start_block))
                result["byChain"][chain] = contracts

        stats = result["stats"]
        for chain, contracts in result["byChain"].items():
            chain_stats = summarize(contracts)
            result["statsByChain"][chain] = chain_stats
            for bucket in ("testnet" if is_testnet(chain) else "mainnet", "total"):
                for key, value in chain_stats.items():
                    stats[bucket][key] += value

        # flat fields read by the score engine and the credential subject
        result["mainnetContracts"] = stats["mainnet"]["contracts"]
        result["testnetContracts"] = stats["testnet"]["contracts"]
        result["totalTVL"] = stats["mainnet"]["tvl"]
        result["testnetTVL"] = stats["testnet"]["tvl"]
        result["uniqueUsers"] = stats["total"]["uniqueUsers"]
        result["totalTransactions"] = stats["total"]["transactions"]

        logger.info("Collected %d mainnet / %d testnet contracts for %s",
                    result["mainnetContracts"], result["testnetContracts"], subject_key)
        return result

    async def _deployed_by(self, client, chain: str, deployer: str, start_block: str) -> list[dict]:
        transfers = await self.rpc.asset_transfers(
            client, chain,
            fromBlock=start_block,
            toBlock="latest",
            fromAddress=deployer,
            category=["external"],
            withMetadata=True,
            excludeZeroValue=False,
        )
        contracts = []
        for tx in transfers:
            if tx.get("to") is not None or not tx.get("hash"):
                continue
            receipt = await self.rpc.call(client, chain, "eth_getTransactionReceipt", [tx["hash"]])
            if not receipt or not receipt.get("contractAddress"):
                continue
            contracts.append(await self._contract_metrics(client, chain, receipt, tx))
        return contracts

    async def _contract_metrics(self, client, chain: str, receipt: dict, deployment: dict) -> dict:
        address = receipt["contractAddress"].lower()
        block = receipt.get("blockNumber") or "0x0"
        testnet = is_testnet(chain)

        incoming = await self.rpc.asset_transfers(
            client, chain,
            fromBlock=block,
            toBlock="latest",
            toAddress=address,
            category=["external"] if testnet else ["external", "erc20"],
        )

        senders = {t.get("from") for t in incoming if t.get("from")}
        value = 0.0
        allowed = TVL_TOKENS.get(chain, set())
        for t in incoming:
            amount = t.get("value")
            if not amount:
                continue
            if t.get("asset") == "ETH":
                value += float(amount)
            elif not testnet:
                token = ((t.get("rawContract") or {}).get("address") or "").lower()
                if token in allowed:
                    # summed in token units, priced as ETH
                    value += float(amount)

        return {
            "address": address,
            "chain": chain,
            "blockNumber": int(block, 16) if isinstance(block, str) else int(block),
            "deploymentDate": (deployment.get("metadata") or {}).get("blockTimestamp"),
            "deploymentTx": deployment.get("hash"),
            "uniqueUsers": len(senders),
            "tvl": await self.prices.to_usd(value, "ETH"),
            "totalTransactions": len(incoming),
            "isTestnet": testnet,
        }
