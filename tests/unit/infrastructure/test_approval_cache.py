"""Unit tests for the approval caches."""

import pytest
import yaml

from toolrelay.core.domain.models import ApprovalDecision
from toolrelay.infrastructure.persistence.approval_cache import (
    FileApprovalCache,
    InMemoryApprovalCache,
)


@pytest.fixture(params=["memory", "file"])
def cache(request, tmp_path):
    if request.param == "memory":
        return InMemoryApprovalCache()
    return FileApprovalCache(path=str(tmp_path / "cache" / "approvals.yaml"))


class TestApprovalCacheContract:
    @pytest.mark.asyncio
    async def test_get_only_returns_known_tools(self, cache):
        """Test lookups return decisions for cached tools only."""
        await cache.set_batched("agent", [ApprovalDecision("send_email", True, "ok")])

        found = await cache.get_batched("agent", ["send_email", "delete_file"])

        assert found == {"send_email": ApprovalDecision("send_email", True, "ok")}

    @pytest.mark.asyncio
    async def test_later_decision_overrides(self, cache):
        """Test the latest decision for a tool wins."""
        await cache.set_batched("agent", [ApprovalDecision("send_email", True)])
        await cache.set_batched("agent", [ApprovalDecision("send_email", False)])

        found = await cache.get_batched("agent", ["send_email"])

        assert found["send_email"].approved is False

    @pytest.mark.asyncio
    async def test_agents_are_isolated(self, cache):
        """Test decisions are keyed by agent identity."""
        await cache.set_batched("agent-a", [ApprovalDecision("send_email", True)])

        assert await cache.get_batched("agent-b", ["send_email"]) == {}


class TestFileApprovalCache:
    @pytest.mark.asyncio
    async def test_yaml_layout(self, tmp_path):
        """Test decisions are stored per agent and tool."""
        path = tmp_path / "approvals.yaml"
        cache = FileApprovalCache(path=str(path))

        await cache.set_batched(
            "mailer",
            [ApprovalDecision("send_email", True, "fine"), ApprovalDecision("rm", False)],
        )

        data = yaml.safe_load(path.read_text(encoding="utf-8"))
        assert data == {
            "mailer": {
                "send_email": {"approved": True, "comment": "fine"},
                "rm": {"approved": False},
            }
        }

    @pytest.mark.asyncio
    async def test_decisions_survive_new_instance(self, tmp_path):
        """Test a fresh cache instance reads earlier decisions."""
        path = str(tmp_path / "approvals.yaml")
        await FileApprovalCache(path=path).set_batched(
            "mailer", [ApprovalDecision("send_email", True)]
        )

        found = await FileApprovalCache(path=path).get_batched("mailer", ["send_email"])

        assert found["send_email"].approved is True
