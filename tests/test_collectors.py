"""Tests for klyro.collectors with mocked HTTP responses."""

import json

import httpx
import pytest
import respx

from klyro.collectors import (
    AlchemyRPC,
    ContractsCollector,
    GitHubCollector,
    HackathonCollector,
    OnchainCollector,
    PriceOracle,
)
from klyro.collectors.base import check_response, is_testnet
from klyro.collectors.github import GRAPHQL_URL, build_query, normalize_user
from klyro.collectors.hackathon import (
    POAP_GRAPHQL_URL,
    categorize,
    devfolio_entries,
    ethglobal_entries,
    is_win,
)
from klyro.collectors.onchain import categories_for, tally
from klyro.collectors.prices import PRICE_URL
from klyro.config import KeyRing
from klyro.errors import ConfigurationError, PermanentUpstreamError, UpstreamError
from klyro.queue import UnrecoverableError

ADDRESS = "0x" + "ab" * 20
CONTRACT = "0x" + "c0" * 20


# ─── Shared response checks ────────────────────────────────────────

def test_testnet_detection():
    assert is_testnet("eth-sepolia")
    assert is_testnet("base-sepolia")
    assert not is_testnet("eth-mainnet")


def test_check_response_rate_limit_carries_retry_after():
    resp = httpx.Response(429, headers={"Retry-After": "30"})
    with pytest.raises(UpstreamError) as exc:
        check_response(resp, "github")
    assert exc.value.retry_after == 30
    assert exc.value.status == 429


def test_check_response_secondary_rate_limit():
    resp = httpx.Response(403, headers={"x-ratelimit-remaining": "0"})
    with pytest.raises(UpstreamError, match="rate limited"):
        check_response(resp, "github")


def test_check_response_server_error():
    with pytest.raises(UpstreamError) as exc:
        check_response(httpx.Response(502, text="bad gateway"), "alchemy")
    assert exc.value.status == 502
    assert exc.value.retryable is True


def test_check_response_ok():
    check_response(httpx.Response(200, json={}), "alchemy")


# ─── GitHub ────────────────────────────────────────────────────────

def _window(total, prs, issues, repos):
    return {
        "contributionCalendar": {"totalContributions": total, "weeks": []},
        "pullRequestContributions": {"totalCount": prs},
        "issueContributions": {"totalCount": issues},
        "commitContributionsByRepository": [
            {"repository": {"nameWithOwner": name}, "contributions": {"totalCount": n}}
            for name, n in repos.items()
        ],
    }


GITHUB_USER = {
    "login": "octocat",
    "name": "The Octocat",
    "email": "",
    "location": "San Francisco",
    "bio": None,
    "createdAt": "2020-01-01T00:00:00Z",
    "followers": {"totalCount": 42},
    "repositories": {
        "totalCount": 2,
        "nodes": [
            {"nameWithOwner": "octocat/a", "stargazerCount": 10, "forkCount": 2,
             "languages": {"edges": [{"size": 1000, "node": {"name": "Solidity"}},
                                     {"size": 500, "node": {"name": "Python"}}]}},
            {"nameWithOwner": "octocat/b", "stargazerCount": 5, "forkCount": 1,
             "languages": {"edges": [{"size": 300, "node": {"name": "Python"}}]}},
        ],
    },
    "organizations": {"nodes": [{"login": "github", "name": "GitHub"}]},
    "y0": _window(100, 5, 2, {"ethereum/go-ethereum": 3, "octocat/a": 10}),
    "y1": _window(50, 1, 0, {"ethereum/go-ethereum": 2}),
    "y2": None,
    "y3": _window(0, 0, 0, {}),
}


def test_query_aliases_four_year_windows():
    query = build_query()
    for i in range(4):
        assert f"y{i}: contributionsCollection(from: $y{i}From, to: $y{i}To)" in query
    assert "fragment Contribs on ContributionsCollection" in query


def test_normalize_user_sums_windows():
    from datetime import datetime, timezone

    data = normalize_user(GITHUB_USER, datetime(2021, 1, 1, tzinfo=timezone.utc))
    assert data["totalContributions"] == 150
    assert data["totalPRs"] == 6
    assert data["totalIssues"] == 2
    assert data["repoContributions"] == {"ethereum/go-ethereum": 5, "octocat/a": 10}
    assert data["languages"] == {"Solidity": 1000, "Python": 800}
    assert data["totalStars"] == 15
    assert data["totalForks"] == 3
    assert data["followers"] == 42
    assert data["publicRepos"] == 2
    assert data["accountAge"] == 366
    assert data["organizations"] == ["github"]


@pytest.mark.asyncio
async def test_github_collect_single_request():
    collector = GitHubCollector(KeyRing(["tok-1"]))
    with respx.mock:
        route = respx.post(GRAPHQL_URL).mock(return_value=httpx.Response(200, json={
            "data": {"rateLimit": {"remaining": 4000}, "user": GITHUB_USER}}))
        data = await collector.collect("octocat", [])

    assert route.call_count == 1
    request = route.calls.last.request
    assert request.headers["Authorization"] == "Bearer tok-1"
    variables = json.loads(request.read())["variables"]
    assert variables["login"] == "octocat"
    assert {"y0From", "y0To", "y3From", "y3To"} <= set(variables)
    assert data["login"] == "octocat"
    assert data["totalContributions"] == 150


@pytest.mark.asyncio
async def test_github_unknown_user_is_permanent():
    collector = GitHubCollector(KeyRing(["tok"]))
    with respx.mock:
        respx.post(GRAPHQL_URL).mock(return_value=httpx.Response(200, json={
            "data": {"user": None},
            "errors": [{"type": "NOT_FOUND", "message": "Could not resolve to a User"}]}))
        with pytest.raises(PermanentUpstreamError) as exc:
            await collector.collect("ghost", [])
    assert isinstance(exc.value, UnrecoverableError)
    assert exc.value.status == 404


@pytest.mark.asyncio
async def test_github_rate_limited_is_retryable():
    collector = GitHubCollector(KeyRing(["tok"]))
    with respx.mock:
        respx.post(GRAPHQL_URL).mock(return_value=httpx.Response(200, json={
            "errors": [{"type": "RATE_LIMITED", "message": "API rate limit exceeded"}]}))
        with pytest.raises(UpstreamError) as exc:
            await collector.collect("octocat", [])
    assert not isinstance(exc.value, UnrecoverableError)


@pytest.mark.asyncio
async def test_github_network_error():
    collector = GitHubCollector(KeyRing(["tok"]))
    with respx.mock:
        respx.post(GRAPHQL_URL).mock(side_effect=httpx.ConnectTimeout("slow"))
        with pytest.raises(UpstreamError, match="ConnectTimeout"):
            await collector.collect("octocat", [])


@pytest.mark.asyncio
async def test_github_without_tokens_is_configuration_error():
    with pytest.raises(ConfigurationError):
        await GitHubCollector(KeyRing()).collect("octocat", [])


def test_keyring_rotates():
    ring = KeyRing(["a", "b"])
    assert [ring.next() for _ in range(3)] == ["a", "b", "a"]


# ─── Alchemy RPC ───────────────────────────────────────────────────

def _rpc_router(handlers):
    """respx side effect dispatching JSON-RPC calls to ``handlers[(host_prefix, method)]``."""
    def side_effect(request):
        body = json.loads(request.read())
        chain = request.url.host.split(".")[0]
        handler = handlers[(chain, body["method"])]
        result = handler(body["params"]) if callable(handler) else handler
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})
    return side_effect


@pytest.mark.asyncio
async def test_asset_transfers_follows_page_key():
    rpc = AlchemyRPC(KeyRing(["k"]))
    pages = iter([
        {"transfers": [{"hash": "0x1"}], "pageKey": "p2"},
        {"transfers": [{"hash": "0x2"}]},
    ])
    seen = []

    def transfers(params):
        seen.append(params[0].get("pageKey"))
        return next(pages)

    with respx.mock:
        respx.post(url__startswith="https://eth-mainnet.g.alchemy.com/v2/").mock(
            side_effect=_rpc_router({("eth-mainnet", "alchemy_getAssetTransfers"): transfers}))
        async with httpx.AsyncClient() as client:
            out = await rpc.asset_transfers(client, "eth-mainnet", fromAddress=ADDRESS)

    assert [t["hash"] for t in out] == ["0x1", "0x2"]
    assert seen == [None, "p2"]


@pytest.mark.asyncio
async def test_rpc_error_raises_upstream():
    rpc = AlchemyRPC(KeyRing(["k"]))
    with respx.mock:
        respx.post("https://eth-mainnet.g.alchemy.com/v2/k").mock(return_value=httpx.Response(
            200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32600, "message": "bad params"}}))
        async with httpx.AsyncClient() as client:
            with pytest.raises(UpstreamError, match="bad params"):
                await rpc.call(client, "eth-mainnet", "eth_blockNumber", [])


def test_rpc_without_keys_is_configuration_error():
    with pytest.raises(ConfigurationError):
        AlchemyRPC(KeyRing()).url("eth-mainnet")


# ─── Contracts ─────────────────────────────────────────────────────

class FixedPrices:
    def __init__(self, usd_per_eth):
        self.usd_per_eth = usd_per_eth

    async def to_usd(self, amount, symbol="ETH"):
        return amount * self.usd_per_eth


@pytest.mark.asyncio
async def test_contracts_collector_finds_deployments_and_tvl():
    def mainnet_transfers(params):
        p = params[0]
        if "fromAddress" in p:
            assert p["fromBlock"] == hex(50)
            return {"transfers": [
                {"hash": "0xdeploy", "to": None, "metadata": {"blockTimestamp": "2024-01-01T00:00:00Z"}},
                {"hash": "0xpay", "to": "0xbeef"},
            ]}
        assert p["toAddress"] == CONTRACT
        assert p["category"] == ["external", "erc20"]
        return {"transfers": [
            {"from": "0xu1", "asset": "ETH", "value": 1.5},
            {"from": "0xu2", "asset": "USDC", "value": 100,
             "rawContract": {"address": "0xA0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"}},
            {"from": "0xu1", "asset": "DOGE", "value": 5, "rawContract": {"address": "0xdead"}},
        ]}

    handlers = {
        ("eth-mainnet", "eth_blockNumber"): "0x64",
        ("eth-mainnet", "alchemy_getAssetTransfers"): mainnet_transfers,
        ("eth-mainnet", "eth_getTransactionReceipt"): {"contractAddress": CONTRACT, "blockNumber": "0x40"},
        ("eth-sepolia", "eth_blockNumber"): "0x10",
        ("eth-sepolia", "alchemy_getAssetTransfers"): {"transfers": []},
    }
    collector = ContractsCollector(AlchemyRPC(KeyRing(["k"])), FixedPrices(2.0),
                                   ["eth-mainnet", "eth-sepolia"])
    with respx.mock:
        respx.post(url__regex=r"https://eth-(mainnet|sepolia)\.g\.alchemy\.com/v2/k").mock(
            side_effect=_rpc_router(handlers))
        result = await collector.collect("octocat", [ADDRESS])

    assert result["mainnetContracts"] == 1
    assert result["testnetContracts"] == 0
    assert result["totalTVL"] == 203.0
    assert result["uniqueUsers"] == 2
    assert result["totalTransactions"] == 3
    assert result["statsByChain"]["eth-mainnet"] == {
        "contracts": 1, "tvl": 203.0, "uniqueUsers": 2, "transactions": 3}
    assert result["statsByChain"]["eth-sepolia"]["contracts"] == 0
    assert result["stats"]["total"] == result["stats"]["mainnet"]
    contract =result["byChain"]["eth-mainnet"][0]
    assert contract["address"] == CONTRACT
    assert contract["blockNumber"] == 64
    assert contract["deploymentTx"] == "0xdeploy"
    assert result["byChain"]["eth-sepolia"] == []


@pytest.mark.asyncio
async def test_contracts_without_addresses_makes_no_calls():
    collector = ContractsCollector(AlchemyRPC(KeyRing()), FixedPrices(1), ["eth-mainnet"])
    result = await collector.collect("octocat", [])
    assert result["mainnetContracts"] == 0
    assert result["byChain"] == {}


# ─── Prices ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_price_falls_back_to_stale_then_zero():
    oracle = PriceOracle(ttl=0)
    with respx.mock:
        route = respx.get(url__startswith=PRICE_URL)
        route.mock(return_value=httpx.Response(200, json={"USD": 3000.0}))
        assert await oracle.price("ETH") == 3000.0
        route.mock(return_value=httpx.Response(500))
        assert await oracle.price("ETH") == 3000.0

    fresh = PriceOracle()
    with respx.mock:
        respx.get(url__startswith=PRICE_URL).mock(side_effect=httpx.ConnectError("down"))
        assert await fresh.price("ETH") == 0.0


@pytest.mark.asyncio
async def test_to_usd_skips_lookup_for_zero():
    assert await PriceOracle().to_usd(0) == 0.0


# ─── On-chain ──────────────────────────────────────────────────────

def test_internal_transfers_excluded_where_unsupported():
    assert "internal" in categories_for("eth-mainnet")
    assert "internal" not in categories_for("eth-sepolia")
    assert "internal" not in categories_for("base-mainnet")


def test_tally_groups_nft_categories():
    stats = tally([{"category": "external"}, {"category": "erc721"}, {"category": "erc1155"},
                   {"category": "erc20"}, {"category": "internal"}])
    assert stats == {"external": 1, "internal": 1, "erc20": 1, "nft": 2, "total": 5}


class StaticHackathons:
    async def collect(self, subject_key, addresses):
        return categorize([{"drop": {"name": "ETHGlobal Winner"}}])


@pytest.mark.asyncio
async def test_onchain_collector_splits_mainnet_and_testnet():
    requested = {}

    def transfers_for(chain, outgoing, incoming):
        def handler(params):
            p = params[0]
            requested.setdefault(chain, set()).update(p["category"])
            if "fromAddress" in p:
                return {"transfers": outgoing}
            return {"transfers": incoming}
        return handler

    handlers = {
        ("eth-mainnet", "alchemy_getAssetTransfers"): transfers_for(
            "eth-mainnet",
            [{"category": "external", "hash": "0x1", "metadata": {"blockTimestamp": "2024-01-01T00:00:00Z"}},
             {"category": "erc20", "hash": "0x2", "metadata": {"blockTimestamp": "2024-03-01T00:00:00Z"}}],
            [{"category": "erc721", "hash": "0x3", "metadata": {"blockTimestamp": "2024-02-01T00:00:00Z"}},
             {"category": "internal", "hash": "0x4"}],
        ),
        ("base-sepolia", "alchemy_getAssetTransfers"): transfers_for(
            "base-sepolia", [{"category": "external", "hash": "0x5"}], []),
    }
    collector = OnchainCollector(AlchemyRPC(KeyRing(["k"])), ["eth-mainnet", "base-sepolia"],
                                 hackathons=StaticHackathons())
    with respx.mock:
        respx.post(url__regex=r"https://(eth-mainnet|base-sepolia)\.g\.alchemy\.com/v2/k").mock(
            side_effect=_rpc_router(handlers))
        result = await collector.collect("octocat", [ADDRESS])

    assert result["transactionStats"]["mainnet"] == {"external": 1, "internal": 1, "erc20": 1, "nft": 1, "total": 4}
    assert result["transactionStats"]["testnet"]["total"] == 1
    assert "internal" not in requested["base-sepolia"]
    recent = result["byChain"]["eth-mainnet"]["recentTransfers"]
    assert [t["hash"] for t in recent[:3]] == ["0x2", "0x3", "0x1"]
    assert result["hackathon"]["totalWins"] == 1


@pytest.mark.asyncio
async def test_onchain_without_addresses_still_reports_hackathons():
    collector = OnchainCollector(AlchemyRPC(KeyRing()), ["eth-mainnet"], hackathons=StaticHackathons())
    result = await collector.collect("octocat", [])
    assert result["transactionStats"]["mainnet"]["total"] == 0
    assert result["hackathon"]["totalHackerExperience"] == 1


# ─── Hackathons ────────────────────────────────────────────────────

def test_win_keywords():
    assert is_win("ETHDenver 2024 - 1st Place")
    assert is_win("Finalist: Scaling Ethereum")
    assert not is_win("Devcon Attendee")


def test_categorize_counts():
    result = categorize([
        {"drop": {"name": "ETHGlobal Hacker", "image_url": "a.png"}},
        {"drop": {"name": "ETHGlobal Prize Winner", "image_url": "b.png"}},
        {"drop": None},
    ])
    assert result["totalPoaps"] == 3
    assert result["totalHackerExperience"] == 3
    assert result["totalWins"] == 1
    assert result["WINS"]["packs"] == [{"name": "ETHGlobal Prize Winner", "imageUrl": "b.png"}]


@pytest.mark.asyncio
async def test_hackathon_collector_paginates():
    full_page = [{"drop": {"name": f"Hack {i}"}} for i in range(100)]
    last_page = [{"drop": {"name": "Hackathon winner"}}]
    pages = iter([full_page, last_page])

    def side_effect(request):
        body = json.loads(request.read())
        assert body["variables"]["where"] == {"collector_address": {"_eq": ADDRESS}}
        return httpx.Response(200, json={"data": {"poaps": next(pages)}})

    with respx.mock:
        route = respx.post(POAP_GRAPHQL_URL).mock(side_effect=side_effect)
        result = await HackathonCollector().collect("octocat", [ADDRESS.upper().replace("0X", "0x")])

    assert route.call_count == 2
    assert result["totalPoaps"] == 101
    assert result["totalWins"] == 1


@pytest.mark.asyncio
async def test_hackathon_graphql_error():
    with respx.mock:
        respx.post(POAP_GRAPHQL_URL).mock(return_value=httpx.Response(
            200, json={"errors": [{"message": "boom"}]}))
        with pytest.raises(UpstreamError, match="GraphQL error"):
            await HackathonCollector().collect("octocat", [ADDRESS])


@pytest.mark.asyncio
async def test_hackathon_no_addresses_no_calls():
    result = await HackathonCollector().collect("octocat", [])
    assert result["totalPoaps"] == 0


# ─── Hackathon packs ───────────────────────────────────────────────

HACKER_PACK = "0x32382a82d9faDc55f971f33DaEeE5841cfbADbE0"
LONDON_FINALIST = "0xa94b0a0ad9485946a771acb89a7927923ddd389f"
SINGAPORE_FINALIST = "0x44Ebc0A6fA6700931F7a817126aa7BDce41831C4"
ETHSF = "0x2cb02ffcad9d09a08a365e7fffd166ebb369318c"
ETHMUMBAI = "0xc051abb005ccf2eec5836a03f08591c22c2f3273"


def nft(contract, name="", description="", image=None):
    return {
        "contract": {"address": contract},
        "name": name,
        "description": description,
        "image": {"originalUrl": image} if image else {},
    }


def test_ethglobal_entries_split_community_and_finalist():
    community, finalist = ethglobal_entries([
        nft(HACKER_PACK),
        nft(LONDON_FINALIST, image="london.png"),
        nft(SINGAPORE_FINALIST, image="wrong.png"),
        nft(CONTRACT, image="other.png"),
    ])
    assert community == [{
        "name": "Hacker Pack",
        "imageUrl": "https://storage.googleapis.com/ethglobal-api-production/packs/hacker/hacker-pack.jpg",
    }]
    assert [e["name"] for e in finalist] == ["ETHGlobal London 2024 Finalist",
                                             "ETHGlobal Singapore 2025 Finalist"]
    assert finalist[0]["imageUrl"] == "london.png"
    assert finalist[1]["imageUrl"].startswith("https://ethglobal.b-cdn.net/")


def test_devfolio_entries_use_winner_text():
    participants, winners = devfolio_entries("base-mainnet", [
        nft(ETHSF, name="EthSF Winner", image="https://ipfs.io/ipfs/Qm1"),
        nft(ETHSF, name="EthSF Hacker", description="Thanks for building"),
        nft(ETHMUMBAI, name="EthMumbai Winner"),  # arbitrum pack, wrong chain
    ])
    assert winners == [{"name": "EthSF Hackathon", "imageUrl": "https://gateway.pinata.cloud/ipfs/Qm1"}]
    assert participants == [{"name": "EthSF Hackathon", "imageUrl": ""}]


@pytest.mark.asyncio
async def test_nfts_for_owner_follows_page_key():
    rpc = AlchemyRPC(KeyRing(["k"]))
    pages = iter([
        httpx.Response(200, json={"ownedNfts": [nft(HACKER_PACK)], "pageKey": "p2"}),
        httpx.Response(200, json={"ownedNfts": [nft(LONDON_FINALIST)]}),
    ])
    with respx.mock:
        route = respx.get(url__startswith="https://opt-mainnet.g.alchemy.com/nft/v3/k/getNFTsForOwner").mock(
            side_effect=lambda request: next(pages))
        async with httpx.AsyncClient() as client:
            owned = await rpc.nfts_for_owner(client, "opt-mainnet", ADDRESS, [HACKER_PACK, LONDON_FINALIST])

    assert len(owned) == 2
    first, second = (call.request.url.params for call in route.calls)
    assert first["owner"] == ADDRESS
    assert first.get_list("contractAddresses[]") == [HACKER_PACK, LONDON_FINALIST]
    assert "pageKey" not in first
    assert second["pageKey"] == "p2"


@pytest.mark.asyncio
async def test_hackathon_collector_merges_all_sources():
    owned = {
        "opt-mainnet": [nft(HACKER_PACK, image="hacker.png"), nft(LONDON_FINALIST, image="london.png")],
        "base-mainnet": [nft(ETHSF, name="EthSF Winner")],
        "arb-mainnet": [nft(ETHMUMBAI, name="EthMumbai Hacker")],
        "polygon-mainnet": [],
    }

    def nft_api(request):
        chain = request.url.host.split(".")[0]
        return httpx.Response(200, json={"ownedNfts": owned[chain]})

    collector = HackathonCollector(rpc=AlchemyRPC(KeyRing(["k"])))
    with respx.mock:
        respx.post(POAP_GRAPHQL_URL).mock(return_value=httpx.Response(200, json={"data": {"poaps": [
            {"drop": {"name": "ETHDenver Hacker", "image_url": "denver.png"}},
            {"drop": {"name": "Superhack Prize Winner", "image_url": "super.png"}},
        ]}}))
        api = respx.get(url__regex=r"https://[a-z-]+\.g\.alchemy\.com/nft/v3/k/getNFTsForOwner").mock(
            side_effect=nft_api)
        result = await collector.collect("octocat", [ADDRESS])

    assert api.call_count == 4
    assert [p["name"] for p in result["HACKER"]["packs"]] == [
        "EthMumbai", "Hacker Pack", "ETHDenver Hacker", "Superhack Prize Winner"]
    assert [p["name"] for p in result["WINS"]["packs"]] == [
        "EthSF Hackathon", "ETHGlobal London 2024 Finalist", "Superhack Prize Winner"]
    assert result["totalHackerExperience"] == 4
    assert result["totalWins"] == 3
    assert result["totalPoaps"] == 2
    assert result["bySource"]["devfolio"] == {"hacker": 1, "wins": 1}
    assert result["bySource"]["ethglobal"] == {"hacker": 1, "wins": 1}


@pytest.mark.asyncio
async def test_hackathon_pack_lookup_failure_fails_the_attempt():
    collector = HackathonCollector(rpc=AlchemyRPC(KeyRing(["k"])))
    with respx.mock:
        respx.post(POAP_GRAPHQL_URL).mock(return_value=httpx.Response(200, json={"data": {"poaps": []}}))
        respx.get(url__startswith="https://opt-mainnet.g.alchemy.com/nft/v3/").mock(
            return_value=httpx.Response(503, text="unavailable"))
        with pytest.raises(UpstreamError, match="HTTP 503"):
            await collector.collect("octocat", [ADDRESS])


@pytest.mark.asyncio
async def test_hackathon_without_alchemy_keys_skips_packs():
    collector = HackathonCollector(rpc=AlchemyRPC(KeyRing()))
    with respx.mock:
        respx.post(POAP_GRAPHQL_URL).mock(return_value=httpx.Response(200, json={"data": {"poaps": []}}))
        result = await collector.collect("octocat", [ADDRESS])
    assert result["HACKER"] == {"count": 0, "packs": []}
    assert result["bySource"]["ethglobal"] == {"hacker": 0, "wins": 0}
