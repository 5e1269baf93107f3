"""
Score Engine: threshold/weight scoring plus a monetary developer-worth estimate.

Each metric contributes ``min(value / threshold, 1) * weight``. Web2 and Web3
totals are the sums of their metric terms, clipped to [0, 100]:

  Web2: prs, contributions, forks, stars, issues, totalLinesOfCode,
        accountAge (days), followers
  Web3: mainnetContracts, testnetContracts, mainnetTVL, uniqueUsers,
        transactions, web3Languages, cryptoRepoContributions,
        hackathonWins, hackerExperience

totalScore = (web2 + web3) / 2

Developer worth = Σ value × multiplier over experience, skill and influence
metrics of both domains. It is a dollar figure and is never clipped.
"""

from __future__ import annotations

import copy
import json
import logging
import math
import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)

WEB2_METRICS = ("prs", "contributions", "forks", "stars", "issues",
                "totalLinesOfCode", "accountAge", "followers")
WEB3_METRICS = ("mainnetContracts", "testnetContracts", "mainnetTVL", "uniqueUsers",
                "transactions", "web3Languages", "cryptoRepoContributions",
                "hackathonWins", "hackerExperience")
WEB3_LANGUAGES = ("Rust", "Solidity", "Move", "Cadence")

DEFAULT_CRYPTO_REPOS = (
    "ethereum/go-ethereum", "ethereum/solidity", "bitcoin/bitcoin", "solana-labs/solana",
    "cosmos/cosmos-sdk", "paritytech/substrate", "near/nearcore", "aptos-labs/aptos-core",
    "matter-labs/zksync", "starkware-libs/starkex-contracts", "Uniswap/v3-core",
    "aave/aave-v3-core", "compound-finance/compound-protocol", "makerdao/dss",
    "curvefi/curve-contract", "0xPolygonZero/plonky2", "AztecProtocol/barretenberg",
    "ConsenSys/gnark", "Zokrates/ZoKrates", "microsoft/Nova", "noir-lang/noir",
    "semaphore-protocol/semaphore", "zcash/halo2", "zcash/zcash", "zkcrypto/bellman",
    "OpenZeppelin/openzeppelin-contracts", "OpenZeppelin/openzeppelin-contracts-upgradeable",
    "Vectorized/solady", "foundry-rs/foundry", "ethereum/web3.py", "ethereum/solc-js",
    "ethereum/c-kzg-4844", "rainbow-me/rainbowkit", "thirdweb-dev/contracts",
    "transmissions11/solmate", "Consensys/teku", "hyperledger/besu", "hyperledger/web3j",
    "ipfs/kubo", "libp2p/go-libp2p", "libp2p/rust-libp2p", "prysmaticlabs/prysm",
    "crytic/echidna", "crytic/slither", "protofire/solhint", "sc-forks/solidity-coverage",
    "arkworks-rs/algebra", "arkworks-rs/groth16", "arkworks-rs/snark",
    "dalek-cryptography/bulletproofs", "lambdaclass/lambdaworks", "ApeWorX/ape",
    "bluealloy/revm", "eth-infinitism/account-abstraction", "iden3/circom", "iden3/snarkjs",
    "paradigmxyz/cryo", "scaffold-eth/scaffold-eth-2", "starkware-libs/cairo-lang",
)

DEFAULT_CONFIG: dict = {
    "version": "default",
    "thresholds": {
        "mainnetContracts": 5,
        "testnetContracts": 10,
        "mainnetTVL": 200,
        "uniqueUsers": 50,
        "transactions": 3000,
        "web3Languages": 10_000_000,
        "cryptoRepoContributions": 5,
        "hackathonWins": 2,
        "hackerExperience": 10,
        "prs": 25,
        "contributions": 200,
        "forks": 200,
        "stars": 200,
        "issues": 10,
        "totalLinesOfCode": 26_639_660,
        "accountAge": 4998,
        "followers": 100,
    },
    "weights": {
        "mainnetContracts": 5,
        "testnetContracts": 3,
        "mainnetTVL": 3,
        "uniqueUsers": 3,
        "transactions": 37,
        "web3Languages": 24,
        "cryptoRepoContributions": 10,
        "hackathonWins": 10,
        "hackerExperience": 5,
        "prs": 15,
        "contributions": 20,
        "forks": 10,
        "stars": 10,
        "issues": 5,
        "totalLinesOfCode": 20,
        "accountAge": 10,
        "followers": 10,
    },
    "developerWorthMultipliers": {
        "web3": {
            "experience": {
                "mainnetContract": 3000,
                "testnetContract": 2000,
                "cryptoRepoContribution": 100,
                "hackathonWin": 200,
                "hackerExperience": 100,
            },
            "skill": {"solidity": 0.002, "rust": 0.003, "move": 0.0025, "cadence": 0.0025},
            "influence": {"tvlMultiplier": 0.1, "tvlWorthCap": 50_000, "uniqueUser": 20, "transaction": 20},
        },
        "web2": {
            "experience": {"accountAge": 2, "pr": 100, "contribution": 20},
            "skill": {"lineOfCode": 0.0001},
            "influence": {"star": 10, "fork": 20, "follower": 10},
        },
    },
    "cryptoRepos": list(DEFAULT_CRYPTO_REPOS),
}


def _num(value: Any) -> float:
    """Coerce to a finite float; anything missing or unusable is 0."""
    if isinstance(value, bool) or value is None:
        return 0.0
    try:
        n = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(n) or math.isinf(n):
        return 0.0
    return n


def _freeze(value):
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value):
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


def _overlay(base: dict, override: Mapping) -> dict:
    out = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(out.get(key), dict):
            out[key] = _overlay(out[key], value)
        else:
            out[key] = value
    return out


def verification_level(total_score: float) -> str:
    """PREMIUM above 500, VERIFIED above 200, BASIC otherwise. Boundaries are exclusive."""
    if total_score > 500:
        return "PREMIUM"
    if total_score > 200:
        return "VERIFIED"
    return "BASIC"


# ─── Configuration ─────────────────────────────────────────────────

@dataclass(frozen=True)
class ScoreConfiguration:
    """Operator-owned scoring parameters. Read-only once built."""

    version: str
    thresholds: Mapping[str, float]
    weights: Mapping[str, float]
    developer_worth_multipliers: Mapping[str, Any]
    crypto_repos: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Optional[Mapping] = None) -> "ScoreConfiguration":
        """Build a configuration from operator values layered over the defaults."""
        merged = _overlay(DEFAULT_CONFIG, data or {})
        for section in ("thresholds", "weights"):
            for name, value in merged[section].items():
                if not isinstance(value, (int, float)) or isinstance(value, bool):
                    raise ValueError(f"{section}.{name} must be numeric, got {value!r}")
        return cls(
            version=str(merged.get("version", "default")),
            thresholds=_freeze(merged["thresholds"]),
            weights=_freeze(merged["weights"]),
            developer_worth_multipliers=_freeze(merged["developerWorthMultipliers"]),
            crypto_repos=tuple(merged.get("cryptoRepos") or ()),
        )

    @classmethod
    def default(cls) -> "ScoreConfiguration":
        return cls.from_dict()

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "thresholds": _thaw(self.thresholds),
            "weights": _thaw(self.weights),
            "developerWorthMultipliers": _thaw(self.developer_worth_multipliers),
            "cryptoRepos": list(self.crypto_repos),
        }


class ScoreConfigLoader:
    """Loads a JSON score configuration and reloads it when the file changes."""

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._config = ScoreConfiguration.default()
        self._mtime: Optional[float] = None
        if path:
            self._reload(force=True)

    def current(self) -> ScoreConfiguration:
        if self.path:
            self._reload()
        return self._config

    def _reload(self, force: bool = False) -> None:
        try:
            mtime = os.path.getmtime(self.path)
        except OSError:
            if force:
                logger.warning("Score config %s not found, using defaults", self.path)
            return
        if not force and mtime == self._mtime:
            return
        try:
            with open(self.path) as f:
                config = ScoreConfiguration.from_dict(json.load(f))
        except (OSError, ValueError) as e:
            # keep serving the last good configuration
            logger.error("Invalid score config %s: %s", self.path, e)
            self._mtime = mtime
            return
        self._config = config
        self._mtime = mtime
        logger.info("Loaded score config %s (version=%s)", self.path, config.version)


# ─── Engine ────────────────────────────────────────────────────────

@dataclass
class MetricScore:
    value: float
    threshold: float
    weight: float
    score: float

    def to_dict(self) -> dict:
        return {"value": self.value, "threshold": self.threshold,
                "weight": self.weight, "score": self.score}


@dataclass
class ScoreResult:
    web2_total: float
    web3_total: float
    total_score: float
    developer_worth: float
    verification_level: str
    config_version: str
    web2: dict[str, MetricScore] = field(default_factory=dict)
    web3: dict[str, MetricScore] = field(default_factory=dict)
    worth_breakdown: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "web2Total": self.web2_total,
            "web3Total": self.web3_total,
            "totalScore": self.total_score,
            "developerWorth": self.developer_worth,
            "verificationLevel": self.verification_level,
            "configVersion": self.config_version,
            "web2": {k: m.to_dict() for k, m in self.web2.items()},
            "web3": {k: m.to_dict() for k, m in self.web3.items()},
            "worthBreakdown": self.worth_breakdown,
        }


def extract_metrics(merged_data: Mapping, crypto_repos=()) -> dict[str, float]:
    """Pull raw metric values out of the merged collector document."""
    github = merged_data.get("github") or {}
    contracts = merged_data.get("contracts") or {}
    onchain = merged_data.get("onchain") or {}
    hackathon = onchain.get("hackathon") or {}
    tx_stats = onchain.get("transactionStats") or {}

    languages = github.get("languages") or {}
    if not isinstance(languages, Mapping):
        languages = {}
    repo_contribs = github.get("repoContributions") or {}
    if not isinstance(repo_contribs, Mapping):
        repo_contribs = {}
    wanted = {r.lower() for r in crypto_repos}
    crypto_contribs = sum(_num(n) for repo, n in repo_contribs.items() if repo.lower() in wanted)

    return {
        "prs": _num(github.get("totalPRs")),
        "contributions": _num(github.get("totalContributions")),
        "forks": _num(github.get("totalForks")),
        "stars": _num(github.get("totalStars")),
        "issues": _num(github.get("totalIssues")),
        "totalLinesOfCode": sum(_num(v) for v in languages.values()),
        "accountAge": _num(github.get("accountAge")),
        "followers": _num(github.get("followers")),
        "mainnetContracts": _num(contracts.get("mainnetContracts")),
        "testnetContracts": _num(contracts.get("testnetContracts")),
        "mainnetTVL": _num(contracts.get("totalTVL")),
        "uniqueUsers": _num(contracts.get("uniqueUsers")),
        "transactions": _num((tx_stats.get("mainnet") or {}).get("total")),
        "web3Languages": sum(_num(languages.get(lang)) for lang in WEB3_LANGUAGES),
        "cryptoRepoContributions": crypto_contribs,
        "hackathonWins": _num(hackathon.get("totalWins")),
        "hackerExperience": _num(hackathon.get("totalHackerExperience")),
        # worth-only inputs
        "solidity": _num(languages.get("Solidity")),
        "rust": _num(languages.get("Rust")),
        "move": _num(languages.get("Move")),
        "cadence": _num(languages.get("Cadence")),
    }


def metric_term(value: float, threshold: float, weight: float) -> float:
    value, threshold, weight = _num(value), _num(threshold), _num(weight)
    if threshold <= 0:
        return weight if value > 0 else 0.0
    return min(max(value, 0.0) / threshold, 1.0) * weight


class ScoreEngine:
    """Stateless scorer. ``compute`` never touches the configuration it is given."""

    def compute(self, merged_data: Mapping, config: ScoreConfiguration) -> ScoreResult:
        metrics = extract_metrics(merged_data, config.crypto_repos)

        web2 = self._domain(WEB2_METRICS, metrics, config)
        web3 = self._domain(WEB3_METRICS, metrics, config)
        web2_total = _clip(sum(m.score for m in web2.values()))
        web3_total = _clip(sum(m.score for m in web3.values()))
        total = (web2_total + web3_total) / 2

        worth, breakdown = self._developer_worth(metrics, config.developer_worth_multipliers)

        return ScoreResult(
            web2_total=round(web2_total, 4),
            web3_total=round(web3_total, 4),
            total_score=round(total, 4),
            developer_worth=round(worth, 2),
            verification_level=verification_level(total),
            config_version=config.version,
            web2=web2,
            web3=web3,
            worth_breakdown=breakdown,
        )

    @staticmethod
    def _domain(names, metrics, config) -> dict[str, MetricScore]:
        out = {}
        for name in names:
            threshold = _num(config.thresholds.get(name))
            weight = _num(config.weights.get(name))
            value = metrics[name]
            out[name] = MetricScore(value, threshold, weight, metric_term(value, threshold, weight))
        return out

    @staticmethod
    def _developer_worth(metrics: dict, multipliers: Mapping) -> tuple[float, dict]:
        w3 = multipliers.get("web3") or {}
        w2 = multipliers.get("web2") or {}

        def group(mults, pairs):
            items = {label: metrics[metric] * _num(mults.get(label)) for label, metric in pairs}
            return items, sum(items.values())

        w3_inf = w3.get("influence") or {}
        tvl_cap = _num(w3_inf.get("tvlWorthCap")) or 50_000
        tvl_worth = min(metrics["mainnetTVL"] * _num(w3_inf.get("tvlMultiplier")), tvl_cap)

        w3_exp, w3_exp_total = group(w3.get("experience") or {}, (
            ("mainnetContract", "mainnetContracts"),
            ("testnetContract", "testnetContracts"),
            ("cryptoRepoContribution", "cryptoRepoContributions"),
            ("hackathonWin", "hackathonWins"),
            ("hackerExperience", "hackerExperience"),
        ))
        w3_skill, w3_skill_total = group(w3.get("skill") or {}, (
            ("solidity", "solidity"), ("rust", "rust"), ("move", "move"), ("cadence", "cadence"),
        ))
        w3_rest, w3_rest_total = group(w3_inf, (
            ("uniqueUser", "uniqueUsers"), ("transaction", "transactions"),
        ))
        w3_inf_items = {"tvl": tvl_worth, **w3_rest}

        w2_exp, w2_exp_total = group(w2.get("experience") or {}, (
            ("accountAge", "accountAge"), ("pr", "prs"), ("contribution", "contributions"),
        ))
        w2_skill, w2_skill_total = group(w2.get("skill") or {}, (
            ("lineOfCode", "totalLinesOfCode"),
        ))
        w2_inf, w2_inf_total = group(w2.get("influence") or {}, (
            ("star", "stars"), ("fork", "forks"), ("follower", "followers"),
        ))

        web3_worth = w3_exp_total + w3_skill_total + tvl_worth + w3_rest_total
        web2_worth = w2_exp_total + w2_skill_total + w2_inf_total
        breakdown = {
            "web3": {"experience": w3_exp, "skill": w3_skill, "influence": w3_inf_items,
                     "totalWorth": web3_worth},
            "web2": {"experience": w2_exp, "skill": w2_skill, "influence": w2_inf,
                     "totalWorth": web2_worth},
        }
        return web3_worth + web2_worth, breakdown


def _clip(value: float) -> float:
    return min(max(value, 0.0), 100.0)


_engine = ScoreEngine()


def compute_score(merged_data: Mapping, config: Optional[ScoreConfiguration] = None) -> ScoreResult:
    """Functional entry point around :class:`ScoreEngine`."""
    return _engine.compute(merged_data, config or ScoreConfiguration.default())
