"""GitHub collector: profile, repositories, languages and four years of contributions.

Everything comes from a single GraphQL request: contributionsCollection is
limited to one-year windows, so the query aliases four of them.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

import httpx

from klyro.config import KeyRing
from klyro.errors import ConfigurationError, PermanentUpstreamError, UpstreamError
from klyro.models import StageName, parse_ts

from .base import BaseCollector, check_response, parse_json

logger = logging.getLogger(__name__)

GRAPHQL_URL = "https://api.github.com/graphql"
YEAR_WINDOWS = 4

_CONTRIBUTIONS_FRAGMENT = """
fragment Contribs on ContributionsCollection {
  contributionCalendar {
    totalContributions
    weeks { contributionDays { date contributionCount } }
  }
  pullRequestContributions(first: 1) { totalCount }
  issueContributions(first: 1) { totalCount }
  commitContributionsByRepository(maxRepositories: 100) {
    repository { nameWithOwner }
    contributions { totalCount }
  }
}
"""


def build_query(windows: int = YEAR_WINDOWS) -> str:
    var_decls = " ".join(f"$y{i}From: DateTime!, $y{i}To: DateTime!" for i in range(windows))
    collections = "\n".join(
        f"    y{i}: contributionsCollection(from: $y{i}From, to: $y{i}To) {{ ...Contribs }}"
        for i in range(windows)
    )
    return f"""
query($login: String!, {var_decls}) {{
  rateLimit {{ remaining resetAt }}
  user(login: $login) {{
    login
    name
    email
    location
    bio
    createdAt
    followers {{ totalCount }}
    repositories(first: 100, ownerAffiliations: OWNER, isFork: false,
                 orderBy: {{field: STARGAZERS, direction: DESC}}) {{
      totalCount
      nodes {{
        nameWithOwner
        stargazerCount
        forkCount
        languages(first: 20, orderBy: {{field: SIZE, direction: DESC}}) {{
          edges {{ size node {{ name }} }}
        }}
      }}
    }}
    organizations(first: 20) {{ nodes {{ login name }} }}
{collections}
  }}
}}
{_CONTRIBUTIONS_FRAGMENT}"""


def year_windows(now: datetime, windows: int = YEAR_WINDOWS) -> list[tuple[str, str]]:
    out = []
    end = now
    for _ in range(windows):
        start = end - timedelta(days=365)
        out.append((start.isoformat(), end.isoformat()))
        end = start
    return out


class GitHubCollector(BaseCollector):
    stage = StageName.GITHUB_DATA
    source = "github"

    def __init__(self, tokens: KeyRing, *, url: str = GRAPHQL_URL, timeout: float = 20.0):
        self.tokens = tokens
        self.url = url
        self.timeout = timeout
        self.query = build_query()

    async def collect(self, subject_key: str, addresses: Sequence[str] = ()) -> dict:
        token = self.tokens.next()
        if not token:
            raise ConfigurationError("GITHUB_TOKENS is not configured")

        now = datetime.now(timezone.utc)
        variables = {"login": subject_key}
        for i, (start, end) in enumerate(year_windows(now)):
            variables[f"y{i}From"] = start
            variables[f"y{i}To"] = end

        headers = {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {token}",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, headers=headers) as client:
                resp = await client.post(self.url, json={"query": self.query, "variables": variables})
        except httpx.HTTPError as e:
            raise self._network_error(e) from e

        check_response(resp, self.source)
        body = parse_json(resp, self.source)
        if not isinstance(body, dict):
            raise UpstreamError(self.source, "unexpected GraphQL payload", status=resp.status_code)
        self._raise_for_errors(body, subject_key)

        user = (body.get("data") or {}).get("user")
        if not user:
            raise PermanentUpstreamError(self.source, f"user {subject_key} not found", status=404)

        remaining = ((body.get("data") or {}).get("rateLimit") or {}).get("remaining")
        if remaining is not None and remaining < 100:
            logger.warning("GitHub rate limit low: %s points left", remaining)

        return normalize_user(user, now)

    def _raise_for_errors(self, body: dict, subject_key: str) -> None:
        errors = body.get("errors") or []
        if not errors:
            return
        types = {e.get("type") for e in errors if isinstance(e, dict)}
        message = "; ".join(str(e.get("message", e)) for e in errors if isinstance(e, dict)) or "GraphQL error"
        if "NOT_FOUND" in types:
            raise PermanentUpstreamError(self.source, f"user {subject_key} not found", status=404)
        if "RATE_LIMITED" in types:
            raise UpstreamError(self.source, "rate limited", status=403)
        raise UpstreamError(self.source, message)


def _count(node: Optional[dict]) -> int:
    return int((node or {}).get("totalCount") or 0)


def normalize_user(user: dict, now: datetime) -> dict:
    """Flatten the GraphQL ``user`` node into the githubData section."""
    repos = (user.get("repositories") or {}).get("nodes") or []
    languages: dict[str, int] = {}
    total_stars = total_forks = 0
    for repo in repos:
        total_stars += int(repo.get("stargazerCount") or 0)
        total_forks += int(repo.get("forkCount") or 0)
        for edge in ((repo.get("languages") or {}).get("edges") or []):
            name = (edge.get("node") or {}).get("name")
            if name:
                languages[name] = languages.get(name, 0) + int(edge.get("size") or 0)

    total_contribs = total_prs = total_issues = 0
    repo_contribs: dict[str, int] = {}
    calendar = None
    for i in range(YEAR_WINDOWS):
        window = user.get(f"y{i}")
        if not window:
            continue
        cal = window.get("contributionCalendar") or {}
        if calendar is None:
            calendar = cal
        total_contribs += int(cal.get("totalContributions") or 0)
        total_prs += _count(window.get("pullRequestContributions"))
        total_issues += _count(window.get("issueContributions"))
        for entry in window.get("commitContributionsByRepository") or []:
            name = (entry.get("repository") or {}).get("nameWithOwner")
            if name:
                repo_contribs[name] = repo_contribs.get(name, 0) + _count(entry.get("contributions"))

    account_age = 0
    if user.get("createdAt"):
        try:
            account_age = max((now - parse_ts(user["createdAt"])).days, 0)
        except ValueError:
            logger.warning("Unparseable createdAt for %s: %r", user.get("login"), user["createdAt"])

    return {
        "login": user.get("login"),
        "name": user.get("name"),
        "email": user.get("email"),
        "location": user.get("location"),
        "bio": user.get("bio"),
        "createdAt": user.get("createdAt"),
        "accountAge": account_age,
        "followers": _count(user.get("followers")),
        "publicRepos": _count(user.get("repositories")),
        "totalStars": total_stars,
        "totalForks": total_forks,
        "languages": languages,
        "totalContributions": total_contribs,
        "totalPRs": total_prs,
        "totalIssues": total_issues,
        "contributionCalendar": calendar or {"totalContributions": 0, "weeks": []},
        "repoContributions": repo_contribs,
        "organizations": [
            o.get("login") for o in ((user.get("organizations") or {}).get("nodes") or []) if o
        ],
    }
