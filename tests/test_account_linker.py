"""
Tests for AccountLinker.

Tests cover:
- Exact (login, server) resolution
- Ambiguous and conflicting matches
- Idempotent resolution
- Deployment state machine (at most one deploy request, never blocks)
- Provisioning of a missing remote account
"""

import pytest

from mt5control.accounts.linker import AccountLinker, AccountLinkerConfig
from mt5control.core.errors import AccountNotLinkedError, DeploymentPendingError, LinkResolutionError
from mt5control.ledger.models import ConnectionState, DeploymentState, LinkStatus


@pytest.fixture
def events():
    return []


@pytest.fixture
def linker(gateway, ledger, events):
    def capture(event, **kwargs):
        events.append((event, kwargs))
    return AccountLinker(gateway, ledger, AccountLinkerConfig(log_event_callback=capture))


class TestResolve:
    @pytest.mark.asyncio
    async def test_same_login_on_two_servers_picks_exact_server(self, gateway, ledger, linker):
        gateway.add_account("remote-demo", "12345", "Broker-Demo")
        gateway.add_account("remote-live", "12345", "Broker-Live")
        await ledger.create_link("u1", "12345", "Broker-Live")

        identity = await linker.resolve_link("u1")

        assert identity.remote_id == "remote-live"
        assert (await ledger.get_link("u1")).remote_account_id == "remote-live"

    @pytest.mark.asyncio
    async def test_ambiguous_match_raises_and_persists_nothing(self, gateway, ledger, linker):
        gateway.add_account("remote-a", "12345", "Broker-Live")
        gateway.add_account("remote-b", "12345", "Broker-Live")
        await ledger.create_link("u1", "12345", "Broker-Live")

        with pytest.raises(LinkResolutionError) as exc_info:
            await linker.resolve_link("u1")

        assert exc_info.value.reason == "ambiguous"
        assert sorted(exc_info.value.candidates) == ["remote-a", "remote-b"]
        assert (await ledger.get_link("u1")).remote_account_id is None

    @pytest.mark.asyncio
    async def test_no_match_returns_none(self, gateway, ledger, linker, events):
        gateway.add_account("remote-a", "99999", "Broker-Live")
        await ledger.create_link("u1", "12345", "Broker-Live")

        assert await linker.resolve_link("u1") is None
        assert events[-1][0] == "link_not_found"

    @pytest.mark.asyncio
    async def test_resolution_is_idempotent(self, gateway, ledger, linker):
        gateway.add_account("remote-a", "12345", "Broker-Live")
        await ledger.create_link("u1", "12345", "Broker-Live")

        first = await linker.resolve_link("u1")
        second = await linker.resolve_link("u1")

        assert first.remote_id == second.remote_id == "remote-a"
        link = await ledger.get_link("u1")
        assert link.status is LinkStatus.CONNECTED
        assert link.connection_state is ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_different_remote_id_is_a_conflict(self, gateway, ledger, linker, events):
        await ledger.create_link("u1", "12345", "Broker-Live")
        await ledger.set_remote_id("u1", "remote-old")
        gateway.add_account("remote-new", "12345", "Broker-Live")

        with pytest.raises(LinkResolutionError) as exc_info:
            await linker.resolve_link("u1")

        assert exc_info.value.reason == "conflict"
        assert (await ledger.get_link("u1")).remote_account_id == "remote-old"
        assert events[-1][0] == "link_conflict"

    @pytest.mark.asyncio
    async def test_require_link_without_match_raises_not_found(self, ledger, linker):
        await ledger.create_link("u1", "12345", "Broker-Live")

        with pytest.raises(LinkResolutionError) as exc_info:
            await linker.require_link("u1")

        assert exc_info.value.reason == "not_found"

    @pytest.mark.asyncio
    async def test_unlinked_user_raises(self, linker):
        with pytest.raises(AccountNotLinkedError):
            await linker.resolve_link("nobody")


class TestDeployment:
    @pytest.mark.asyncio
    async def test_undeployed_triggers_one_deploy(self, gateway, ledger, linker):
        gateway.add_account("remote-a", "12345", "Broker-Live", state="UNDEPLOYED")
        await ledger.create_link("u1", "12345", "Broker-Live")
        identity = await linker.resolve_link("u1")

        state = await linker.ensure_deployed(identity, user_id="u1")

        assert state is DeploymentState.DEPLOYING
        assert gateway.calls_to("deploy") == [("remote-a",)]
        link = await ledger.get_link("u1")
        assert link.deployment_state is DeploymentState.DEPLOYING
        assert link.connection_state is ConnectionState.CONNECTING

    @pytest.mark.asyncio
    async def test_deploying_is_not_redeployed(self, gateway, ledger, linker):
        gateway.add_account("remote-a", "12345", "Broker-Live", state="DEPLOYING")
        await ledger.create_link("u1", "12345", "Broker-Live")
        identity = await linker.resolve_link("u1")

        assert await linker.ensure_deployed(identity) is DeploymentState.DEPLOYING
        assert gateway.calls_to("deploy") == []

    @pytest.mark.asyncio
    async def test_require_deployed_raises_pending(self, gateway, ledger, linker):
        gateway.add_account("remote-a", "12345", "Broker-Live", state="UNDEPLOYED")
        await ledger.create_link("u1", "12345", "Broker-Live")

        with pytest.raises(DeploymentPendingError) as exc_info:
            await linker.require_deployed("u1")

        assert exc_info.value.state == "DEPLOYING"

    @pytest.mark.asyncio
    async def test_require_deployed_returns_link_and_identity(self, gateway, ledger, linker):
        gateway.add_account("remote-a", "12345", "Broker-Live")
        await ledger.create_link("u1", "12345", "Broker-Live")

        link, identity = await linker.require_deployed("u1")

        assert link.remote_account_id == "remote-a"
        assert identity.deployment_state is DeploymentState.DEPLOYED


class TestProvision:
    @pytest.mark.asyncio
    async def test_creates_missing_remote_account_and_deploys(self, gateway, ledger, linker):
        identity, state = await linker.provision("u1", "12345", "secret", "Broker-Live")

        assert gateway.calls_to("create_account") == [("12345", "Broker-Live")]
        assert identity.remote_id == "created-1"
        assert state is DeploymentState.DEPLOYING
        assert (await ledger.get_link("u1")).remote_account_id == "created-1"

    @pytest.mark.asyncio
    async def test_existing_remote_account_is_reused(self, gateway, ledger, linker):
        gateway.add_account("remote-a", "12345", "Broker-Live")

        identity, state = await linker.provision("u1", "12345", "secret", "Broker-Live")

        assert gateway.calls_to("create_account") == []
        assert identity.remote_id == "remote-a"
        assert state is DeploymentState.DEPLOYED
