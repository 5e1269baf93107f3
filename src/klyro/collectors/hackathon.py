"""Hackathon history for the subject's addresses.

Three sources feed the same two buckets:

    POAP drops          every drop is hacker experience, win keywords are wins
    ETHGlobal packs     community packs are experience, finalist packs are wins (Optimism)
    Devfolio packs      NFTs whose name or description says "winner" are wins (Base, Arbitrum, Polygon)

Pack ownership comes from Alchemy's NFT API and is skipped when no
Alchemy client is configured.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import httpx

from klyro.errors import UpstreamError

from .alchemy import AlchemyRPC
from .base import BaseCollector, check_response, parse_json

logger = logging.getLogger(__name__)

POAP_GRAPHQL_URL = "https://public.compass.poap.tech/v1/graphql"
PAGE_SIZE = 100
MAX_PAGES = 3

WIN_KEYWORDS = (
    "winner", "finalist", "win", "won", "first place", "award",
    "1st place", "champion", "prize", "winning", "selected", "honored",
)

POAPS_QUERY = """
query PaginatedPOAPsForCollector($order_by: [poaps_order_by!], $limit: Int!, $offset: Int!, $where: poaps_bool_exp!) {
  poaps(limit: $limit, offset: $offset, order_by: $order_by, where: $where) {
    id
    chain
    drop { id name image_url start_date end_date city country }
  }
}
"""

# ─── Pack contracts ────────────────────────────────────────────────

ETHGLOBAL_CHAIN = "opt-mainnet"

COMMUNITY_PACKS = {
    "0x37c6fe4049c95f80e18c9cddaa8481742456520b": "OG Pack",
    "0x27479dd41a85002f5987b8c7e999ca0e07dba817": "Partner Pack",
    "0x5cf3c75e0036f76bb7be1815f641ddd57fd54feb": "Supporter Pack",
    "0x69b4e2bd6d5c5eeeb7e152fb9bc9b6c4364fa410": "Pioneer Pack",
    "0xe600a7ad9b86a2d949069a6092b7b5a1dae50e20": "Builder Pack",
    "0x32382a82d9fadc55f971f33daeee5841cfbadbe0": "Hacker Pack",
}

FINALIST_PACKS = {
    "0x75883f9158a11234e5d94ddedc23f431ce51aa1d": "ETHGlobal Finalist 2025",
    "0xf1f0b74870b946a8cb96ced06749036b65f5018b": "ETHGlobal Taipei 2025 Finalist",
    "0x1da04f739e4b9cff65bd8d1ecb9adf15cc093f08": "Agentic Ethereum 2025 Finalist",
    "0x148f46e97fb11e938ef291b72b9a8c858cd3c157": "ETHGlobal Bangkok 2025 Finalist",
    "0x778cca1bd0dd82ac049aecd1fa5f93c3a328954b": "ETHGlobal San Francisco 2025 Finalist",
    "0xda9d339c9ef58db3e3af9667b1e68feb2815c972": "ETHGlobal Singapore Finalist",
    "0x44ebc0a6fa6700931f7a817126aa7bdce41831c4": "ETHGlobal Singapore 2025 Finalist",
    "0x09c2ffbb99fcccd62cfefc6356bd6846fb30153f": "ETHOnline 2024 Finalist",
    "0x416784e5fcc0bb1e0d2f172a4ad3b1e937a42544": "Superhack 2024 Finalist",
    "0x2ca7362ee7a3b5532d02fbc5927ca8b213d1c7ca": "Brussels 2024 Finalist",
    "0xe8bb0abd672d977acd06b68889bba46643d114a1": "Frameworks 2024 Finalist",
    "0xe2fb6b612a90d38e6183ff8a9323b2a13d9afa5d": "Circuit Breaker 2024 Finalist",
    "0x3c63848388ca9f98403aa5c5c0bb579bdff039bf": "LFGHO 2024 Finalist",
    "0x9e4b7e7bca9389e44b7e7d789fc828819d7ec0a9": "StarkHack 2024 Finalist",
    "0x6f06173d2920d1b8a9a523132cfdc1c3debd1e71": "HackFS 2024 Finalist",
    "0x85052af96ce5d90469a13bc69a618dc9a2d49ad6": "ETHGlobal Sydney 2024 Finalist",
    "0x6f2942e1fb7737ec3d3b29bed92ff3e73601dcd3": "Scaling Ethereum 2024 Finalist",
    "0xa94b0a0ad9485946a771acb89a7927923ddd389f": "ETHGlobal London 2024 Finalist",
}

# the Singapore pack metadata points at the wrong image
PACK_IMAGE_OVERRIDES = {
    "ETHGlobal Singapore 2025 Finalist":
        "https://ethglobal.b-cdn.net/packs/singapore2024-finalist/logo/default.jpg",
}
PACK_IMAGE_FALLBACKS = {
    "Hacker Pack": "https://storage.googleapis.com/ethglobal-api-production/packs/hacker/hacker-pack.jpg",
}

DEVFOLIO_PACKS = {
    "base-mainnet": {
        "0x2cb02ffcad9d09a08a365e7fffd166ebb369318c": "EthSF Hackathon",
        "0x7abe24c1568031401b2d0bad7d752779d22b1ffa": "EthDenver 2025",
        "0x91f311e31319fe79d6aca4a898cd6a00e12c3d23": "Base Around the World Buildathon",
        "0x59ca61566c03a7fb8e4280d97bfa2e8e691da3a6": "Onchain Summer Buildathon",
    },
    "arb-mainnet": {
        "0x2d06b90ec8a3082adea993d99bc6e354fac78b04": "Arbitrum U-Hack",
        "0x93fd88df3e2a377c0f23bf22c1cfd87047818d20": "EthDenver 2024",
        "0xc051abb005ccf2eec5836a03f08591c22c2f3273": "EthMumbai",
        "0xe34494de41383fbad7d1cdba6730d0e943425701": "EthIndia 2023",
        "0x473a55f826b4805c779450a03d8ee7f79727af99": "Unfold 2023",
        "0x861f978a160270c495ff906db24afdb2199dcaf9": "EthBarcelona",
        "0x020c3a900fdbd33795d709e2b40a1f3510fbe1fc": "EthMunich",
    },
    "polygon-mainnet": {
        "0x752ceec57492edb08a733284e372362c6d2ea385": "Ethernals",
    },
}

IPFS_GATEWAY = ("https://ipfs.io/ipfs/", "https://gateway.pinata.cloud/ipfs/")


def is_win(drop_name: str) -> bool:
    name = drop_name.lower()
    return any(keyword in name for keyword in WIN_KEYWORDS)


def _image(nft: dict) -> str:
    return ((nft.get("image") or {}).get("originalUrl")) or ""


def _contract(nft: dict) -> str:
    return ((nft.get("contract") or {}).get("address") or "").lower()


def ethglobal_entries(nfts: list[dict]) -> tuple[list[dict], list[dict]]:
    """Split ETHGlobal pack NFTs into (community, finalist) entries."""
    community, finalist = [], []
    for nft in nfts:
        address = _contract(nft)
        name = COMMUNITY_PACKS.get(address) or FINALIST_PACKS.get(address)
        if name is None:
            continue
        image = PACK_IMAGE_OVERRIDES.get(name) or _image(nft) or PACK_IMAGE_FALLBACKS.get(name, "")
        entry = {"name": name, "imageUrl": image}
        (finalist if address in FINALIST_PACKS else community).append(entry)
    return community, finalist


def devfolio_entries(chain: str, nfts: list[dict]) -> tuple[list[dict], list[dict]]:
    """Split Devfolio NFTs on ``chain`` into (participant, winner) entries."""
    packs = DEVFOLIO_PACKS.get(chain, {})
    participants, winners = [], []
    for nft in nfts:
        name = packs.get(_contract(nft))
        if name is None:
            continue
        text = f"{nft.get('name') or ''} {nft.get('description') or ''}".lower()
        entry = {"name": name, "imageUrl": _image(nft).replace(*IPFS_GATEWAY)}
        (winners if "winner" in text else participants).append(entry)
    return participants, winners


def categorize(poaps: list[dict], packs: Optional[dict] = None) -> dict:
    """Merge POAPs and pack entries into HACKER and WINS.

    Every POAP counts as hacker experience; those with a win keyword also
    count as wins. ``packs`` holds the ``hacker``/``wins`` entry lists per pack source.
    """
    packs = packs or {}
    poap_hacker, poap_wins = [], []
    for poap in poaps:
        drop = poap.get("drop") or {}
        name = drop.get("name") or ""
        entry = {"name": name, "imageUrl": drop.get("image_url")}
        poap_hacker.append(entry)
        if is_win(name):
            poap_wins.append(entry)

    devfolio = packs.get("devfolio") or {}
    ethglobal = packs.get("ethglobal") or {}
    hacker = list(devfolio.get("hacker", [])) + list(ethglobal.get("hacker", [])) + poap_hacker
    wins = list(devfolio.get("wins", [])) + list(ethglobal.get("wins", [])) + poap_wins
    return {
        "HACKER": {"count": len(hacker), "packs": hacker},
        "WINS": {"count": len(wins), "packs": wins},
        "totalPoaps": len(poaps),
        "totalWins": len(wins),
        "totalHackerExperience": len(hacker),
        "bySource": {
            "poap": {"hacker": len(poap_hacker), "wins": len(poap_wins)},
            "ethglobal": {"hacker": len(ethglobal.get("hacker", [])),
                          "wins": len(ethglobal.get("wins", []))},
            "devfolio": {"hacker": len(devfolio.get("hacker", [])),
                         "wins": len(devfolio.get("wins", []))},
        },
    }


class HackathonCollector(BaseCollector):
    source = "poap"

    def __init__(self, *, rpc: Optional[AlchemyRPC] = None, url: str = POAP_GRAPHQL_URL,
                 timeout: float = 10.0):
        self.rpc = rpc
        self.url = url
        self.timeout = timeout

    async def collect(self, subject_key: str, addresses: Sequence[str]) -> dict:
        poaps: list[dict] = []
        packs = {"ethglobal": {"hacker": [], "wins": []}, "devfolio": {"hacker": [], "wins": []}}
        if addresses:
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    for address in addresses:
                        poaps.extend(await self._fetch_all(client, address))
                        if self.rpc is not None and self.rpc.keys:
                            await self._collect_packs(client, address, packs)
            except httpx.HTTPError as e:
                raise self._network_error(e) from e
        result = categorize(poaps, packs)
        logger.debug("Hackathons for %s: %d experience, %d wins (%d POAPs)", subject_key,
                     result["totalHackerExperience"], result["totalWins"], result["totalPoaps"])
        return result

    async def _collect_packs(self, client: httpx.AsyncClient, address: str, packs: dict) -> None:
        nfts = await self.rpc.nfts_for_owner(
            client, ETHGLOBAL_CHAIN, address, [*COMMUNITY_PACKS, *FINALIST_PACKS])
        community, finalist = ethglobal_entries(nfts)
        packs["ethglobal"]["hacker"].extend(community)
        packs["ethglobal"]["wins"].extend(finalist)

        for chain, contracts in DEVFOLIO_PACKS.items():
            nfts = await self.rpc.nfts_for_owner(client, chain, address, list(contracts))
            participants, winners = devfolio_entries(chain, nfts)
            packs["devfolio"]["hacker"].extend(participants)
            packs["devfolio"]["wins"].extend(winners)

    async def _fetch_all(self, client: httpx.AsyncClient, address: str) -> list[dict]:
        out: list[dict] = []
        for page in range(MAX_PAGES):
            variables = {
                "where": {"collector_address": {"_eq": address.lower()}},
                "order_by": [{"id": "desc"}, {"minted_on": "desc"}],
                "limit": PAGE_SIZE,
                "offset": page * PAGE_SIZE,
            }
            resp = await client.post(self.url, json={"query": POAPS_QUERY, "variables": variables})
            check_response(resp, self.source)
            body = parse_json(resp, self.source)
            if not isinstance(body, dict) or body.get("errors"):
                raise UpstreamError(self.source, f"GraphQL error: {body.get('errors') if isinstance(body, dict) else body}")
            batch = ((body.get("data") or {}).get("poaps"))
            if batch is None:
                raise UpstreamError(self.source, "response has no poaps field")
            out.extend(batch)
            if len(batch) < PAGE_SIZE:
                break
        return out
