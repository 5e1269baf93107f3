"""Collector registry: one adapter per data stage."""

from __future__ import annotations

from klyro.config import Settings

from .alchemy import AlchemyRPC
from .base import BaseCollector
from .contracts import ContractsCollector
from .github import GitHubCollector
from .hackathon import HackathonCollector
from .onchain import OnchainCollector
from .prices import PriceOracle


def build_collectors(settings: Settings) -> dict:
    """Map each data stage to its collector, configured from ``settings``."""
    rpc = AlchemyRPC(settings.alchemy_keys)
    prices = PriceOracle(settings.cryptocompare_api_key)
    collectors = [
        GitHubCollector(settings.github_tokens),
        ContractsCollector(rpc, prices, settings.chains),
        OnchainCollector(rpc, settings.chains, hackathons=HackathonCollector(rpc=rpc)),
    ]
    return {c.stage: c for c in collectors}


__all__ = [
    "AlchemyRPC",
    "BaseCollector",
    "ContractsCollector",
    "GitHubCollector",
    "HackathonCollector",
    "OnchainCollector",
    "PriceOracle",
    "build_collectors",
]
