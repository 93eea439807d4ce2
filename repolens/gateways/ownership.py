"""Contributor ranking via the GitHub REST API.

Confidence is normalised against the top contributor::

    commit_share = contributions / max_contributions
    recent_share = commits_last_90_days / max_commits_last_90_days
    confidence   = min(commit_share * 0.9 + min(recent_share * 0.1, 0.1), 1)

so the top contributor lands near 0.9 and recent activity adds at most 0.1.
Without a component-level commit history, every architecture node gets
the top three global owners at 80% of their global confidence.
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx

from ..core.config import Settings
from ..exceptions import OwnershipLookupError
from ..schemas.ownership import ComponentOwnership, OwnerInfo, OwnershipData
from .base import OwnershipResolver, ProgressCallback

logger = logging.getLogger(__name__)

MAX_GLOBAL_OWNERS = 10
MAX_COMPONENT_OWNERS = 3
COMPONENT_CONFIDENCE_FACTOR = 0.8
RECENT_WINDOW_DAYS = 90
HISTORY_WINDOW_DAYS = 730

_GITHUB_URL = re.compile(r"^https?://(?:www\.)?github\.com/([^/\s]+)/([^/\s#?]+?)(?:\.git)?/?$")


def parse_github_url(url: str) -> Optional[Tuple[str, str]]:
    """Return ``(owner, repo)`` for a github.com URL, else None."""
    match = _GITHUB_URL.match(url.strip())
    if not match:
        return None
    return match.group(1), match.group(2)


def _is_bot(contributor: Dict[str, Any]) -> bool:
    login = str(contributor.get("login", ""))
    return "[bot]" in login or contributor.get("type") == "Bot"


def rank_owners(
    contributors: List[Dict[str, Any]],
    commits: List[Dict[str, Any]],
    now: Optional[datetime] = None,
) -> List[OwnerInfo]:
    """Score human contributors from the contributor list and recent commits."""
    now = now or datetime.now(timezone.utc)
    recent_cutoff = now - timedelta(days=RECENT_WINDOW_DAYS)

    recent_counts: Dict[str, int] = {}
    last_commit: Dict[str, datetime] = {}
    for commit in commits:
        author = commit.get("author") or {}
        login = author.get("login") or ((commit.get("commit") or {}).get("author") or {}).get("name")
        date_str = ((commit.get("commit") or {}).get("author") or {}).get("date")
        if not login or not date_str:
            continue
        try:
            when = datetime.fromisoformat(date_str.replace("Z", "+00:00"))
        except ValueError:
            continue
        key = login.lower()
        if when >= recent_cutoff:
            recent_counts[key] = recent_counts.get(key, 0) + 1
        if key not in last_commit or when > last_commit[key]:
            last_commit[key] = when

    humans = [c for c in contributors if not _is_bot(c)]
    if not humans:
        return []

    max_commits = max(int(c.get("contributions", 0)) for c in humans) or 1
    max_recent = max(recent_counts.values(), default=0) or 1

    owners: List[OwnerInfo] = []
    for contributor in humans:
        login = str(contributor["login"])
        commit_count = int(contributor.get("contributions", 0))
        recent = recent_counts.get(login.lower(), 0)
        last = last_commit.get(login.lower())

        commit_share = commit_count / max_commits
        recent_share = recent / max_recent
        confidence = min(commit_share * 0.9 + min(recent_share * 0.1, 0.1), 1.0)

        reasons = [f"{commit_count} total contributions"]
        if recent > 0:
            reasons.append(f"{recent} commits in last {RECENT_WINDOW_DAYS} days")
        if last is not None:
            months_ago = int((now - last).days / 30)
            if months_ago < 12:
                reasons.append(f"Active {months_ago} months ago")

        owners.append(OwnerInfo(
            name=login,
            email=f"{login}@users.noreply.github.com",
            confidence=round(confidence, 4),
            reasons=reasons,
            last_commit_date=last.isoformat() if last else None,
            commit_count=commit_count,
            recent_commit_count=recent,
        ))

    owners.sort(key=lambda o: o.confidence, reverse=True)
    return owners


def component_owners(
    global_owners: List[OwnerInfo],
    nodes: List[Dict[str, Any]],
) -> Dict[str, ComponentOwnership]:
    components: Dict[str, ComponentOwnership] = {}
    top = global_owners[:MAX_COMPONENT_OWNERS]
    for node in nodes:
        node_id = str(node.get("id", ""))
        if not node_id:
            continue
        label = str((node.get("data") or {}).get("label") or node_id)
        components[node_id] = ComponentOwnership(
            component_id=node_id,
            component_label=label,
            owners=[
                owner.model_copy(update={
                    "confidence": round(owner.confidence * COMPONENT_CONFIDENCE_FACTOR, 4),
                    "reasons": [f"Top contributor: {owner.reasons[0]}"],
                })
                for owner in top
            ],
        )
    return components


class GitHubOwnershipResolver(OwnershipResolver):
    """Ownership resolver reading contributors and commits from GitHub."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/vnd.github+json"}
        if self.settings.github_token:
            headers["Authorization"] = f"token {self.settings.github_token}"
        return headers

    async def _get(self, client: httpx.AsyncClient, path: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        try:
            resp = await client.get(path, params=params)
        except httpx.HTTPError as e:
            raise OwnershipLookupError(f"GitHub API request failed: {e}") from e
        if resp.status_code == 204:
            # GitHub answers 204 for empty repositories.
            return []
        if resp.status_code >= 400:
            raise OwnershipLookupError(
                f"GitHub API {path} returned {resp.status_code}: {resp.text[:200]}"
            )
        data = resp.json()
        return data if isinstance(data, list) else []

    async def resolve(self, repo_url, architecture_nodes=None, on_progress: ProgressCallback = None) -> OwnershipData:
        parsed = parse_github_url(repo_url)
        if parsed is None:
            logger.info("Ownership lookup skipped: %s is not a GitHub repository URL", repo_url)
            return OwnershipData()
        owner, repo = parsed
        total_steps = 3 if architecture_nodes else 2

        def report(step: int) -> None:
            if on_progress is not None:
                on_progress(step, total_steps, "steps")

        since = (datetime.now(timezone.utc) - timedelta(days=HISTORY_WINDOW_DAYS)).date().isoformat()
        async with httpx.AsyncClient(
            base_url=self.settings.github_api_base,
            headers=self._headers(),
            timeout=30.0,
            transport=self._transport,
        ) as client:
            contributors = await self._get(client, f"/repos/{owner}/{repo}/contributors", {"per_page": 100})
            report(1)
            if not contributors:
                logger.info("No contributors found for %s/%s", owner, repo)
                return OwnershipData()
            commits = await self._get(
                client, f"/repos/{owner}/{repo}/commits", {"since": since, "per_page": 100}
            )
            report(2)

        owners = rank_owners(contributors, commits)
        data = OwnershipData(global_owners=owners[:MAX_GLOBAL_OWNERS])
        if architecture_nodes:
            data.components = component_owners(data.global_owners, architecture_nodes)
            report(3)

        logger.info(
            "Ownership resolved for %s/%s: %d global owners, %d components",
            owner, repo, len(data.global_owners), len(data.components),
        )
        return data
