"""Tests for contributor ranking and the GitHub ownership resolver."""

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from repolens.core.config import settings
from repolens.exceptions import OwnershipLookupError
from repolens.gateways.ownership import (
    GitHubOwnershipResolver,
    component_owners,
    parse_github_url,
    rank_owners,
)

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


def _commit(login, days_ago):
    when = (NOW - timedelta(days=days_ago)).isoformat().replace("+00:00", "Z")
    return {"author": {"login": login}, "commit": {"author": {"name": login, "date": when}}}


CONTRIBUTORS = [
    {"login": "alice", "contributions": 100, "type": "User"},
    {"login": "bob", "contributions": 50, "type": "User"},
    {"login": "dependabot[bot]", "contributions": 500, "type": "Bot"},
]


class TestParseGithubUrl:

    def test_plain_url(self):
        assert parse_github_url("https://github.com/acme/widgets") == ("acme", "widgets")

    def test_git_suffix_and_trailing_slash(self):
        assert parse_github_url("https://github.com/acme/widgets.git") == ("acme", "widgets")
        assert parse_github_url("https://github.com/acme/widgets/") == ("acme", "widgets")

    def test_other_hosts_are_rejected(self):
        assert parse_github_url("https://gitlab.com/acme/widgets") is None
        assert parse_github_url("https://github.com/acme") is None


class TestRankOwners:

    def test_bots_are_excluded(self):
        owners = rank_owners(CONTRIBUTORS, [], now=NOW)
        assert [o.name for o in owners] == ["alice", "bob"]

    def test_top_contributor_confidence(self):
        owners = rank_owners(CONTRIBUTORS, [_commit("alice", 10)], now=NOW)
        alice = owners[0]
        assert alice.confidence == pytest.approx(1.0)
        assert alice.recent_commit_count == 1
        assert "1 commits in last 90 days" in alice.reasons

    def test_share_based_confidence_without_recent_activity(self):
        owners = rank_owners(CONTRIBUTORS, [], now=NOW)
        assert owners[0].confidence == pytest.approx(0.9)
        assert owners[1].confidence == pytest.approx(0.45)

    def test_old_commits_count_for_last_activity_only(self):
        owners = rank_owners(CONTRIBUTORS, [_commit("bob", 200)], now=NOW)
        bob = next(o for o in owners if o.name == "bob")
        assert bob.recent_commit_count == 0
        assert bob.last_commit_date is not None
        assert "Active 6 months ago" in bob.reasons

    def test_only_bots(self):
        assert rank_owners([CONTRIBUTORS[2]], [], now=NOW) == []


class TestComponentOwners:

    def test_nodes_get_discounted_top_owners(self):
        owners = rank_owners(CONTRIBUTORS, [], now=NOW)
        nodes = [{"id": "api", "data": {"label": "API"}}, {"id": "", "data": {}}, {"id": "db"}]

        components = component_owners(owners, nodes)

        assert set(components) == {"api", "db"}
        assert components["api"].component_label == "API"
        assert components["db"].component_label == "db"
        assert components["api"].owners[0].confidence == pytest.approx(0.72)
        assert components["api"].owners[0].reasons[0].startswith("Top contributor:")


def _resolver(handler) -> GitHubOwnershipResolver:
    config = settings.model_copy(update={"github_api_base": "https://api.github.test", "github_token": "tkn"})
    return GitHubOwnershipResolver(config, transport=httpx.MockTransport(handler))


class TestGitHubOwnershipResolver:

    @pytest.mark.asyncio
    async def test_resolves_global_and_component_owners(self):
        requests = []

        def handler(request):
            requests.append(request)
            if request.url.path.endswith("/contributors"):
                return httpx.Response(200, json=CONTRIBUTORS)
            return httpx.Response(200, json=[])

        progress = []
        data = await _resolver(handler).resolve(
            "https://github.com/acme/widgets",
            architecture_nodes=[{"id": "api", "data": {"label": "API"}}],
            on_progress=lambda cur, total, unit: progress.append((cur, total)),
        )

        assert [o.name for o in data.global_owners] == ["alice", "bob"]
        assert "api" in data.components
        assert progress == [(1, 3), (2, 3), (3, 3)]
        assert requests[0].headers["authorization"] == "token tkn"
        assert requests[0].url.path == "/repos/acme/widgets/contributors"

    @pytest.mark.asyncio
    async def test_empty_repository(self):
        data = await _resolver(lambda r: httpx.Response(204)).resolve("https://github.com/acme/widgets")
        assert data.global_owners == []

    @pytest.mark.asyncio
    async def test_non_github_url_resolves_to_nothing(self):
        def handler(request):
            raise AssertionError("no request expected")

        data = await _resolver(handler).resolve("https://gitlab.com/acme/widgets")
        assert data.global_owners == []
        assert data.components == {}

    @pytest.mark.asyncio
    async def test_api_error_raises(self):
        with pytest.raises(OwnershipLookupError, match="403"):
            await _resolver(lambda r: httpx.Response(403, text="rate limited")).resolve(
                "https://github.com/acme/widgets"
            )
