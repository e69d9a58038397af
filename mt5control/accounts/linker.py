"""
AccountLinker: maps a local account link to a remote broker account.

Resolution is by exact (login, server) match over every remote account
visible to the service credential. The remote id is persisted once; a
different id for an already-linked record is refused, never overwritten.

Deployment is a state machine the caller polls:

    UNDEPLOYED ──ensure_deployed()──> DEPLOYING ──(remote)──> DEPLOYED

ensure_deployed() issues at most one deploy request per call and never waits
for the remote side to finish.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple, TYPE_CHECKING

from mt5control.core.errors import AccountNotLinkedError, DeploymentPendingError, LinkResolutionError
from mt5control.ledger.models import (
    BrokerAccountLink,
    ConnectionState,
    DeploymentState,
    LinkStatus,
)

if TYPE_CHECKING:
    from mt5control.broker.types import BrokerGateway, RemoteAccount
    from mt5control.ledger.store import LedgerStore

log = logging.getLogger("mt5control")


@dataclass
class RemoteIdentity:
    """Resolved remote account plus its last observed states."""
    remote_id: str
    login: str
    server: str
    deployment_state: DeploymentState
    connection_state: ConnectionState

    @classmethod
    def from_remote(cls, account: "RemoteAccount") -> "RemoteIdentity":
        return cls(
            remote_id=account.id,
            login=account.login,
            server=account.server,
            deployment_state=DeploymentState.from_remote(account.state),
            connection_state=ConnectionState.from_remote(account.connection_status),
        )


@dataclass
class AccountLinkerConfig:
    log_event_callback: Optional[Callable[..., None]] = None


class AccountLinker:
    def __init__(
        self,
        gateway: "BrokerGateway",
        ledger: "LedgerStore",
        config: Optional[AccountLinkerConfig] = None,
    ) -> None:
        self.gateway = gateway
        self.ledger = ledger
        self.config = config or AccountLinkerConfig()
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}, default=str))

    async def find_remote(self, login: str, server: str) -> Optional[RemoteIdentity]:
        """
        Exact (login, server) lookup across all remote accounts.

        Returns:
            The single match, or None when nothing matches

        Raises:
            LinkResolutionError: more than one remote account matches
        """
        login = str(login)
        accounts = await self.gateway.list_accounts()
        matches: List["RemoteAccount"] = [a for a in accounts if a.login == login and a.server == server]
        if len(matches) > 1:
            raise LinkResolutionError(login, server, "ambiguous", candidates=[m.id for m in matches])
        if not matches:
            return None
        return RemoteIdentity.from_remote(matches[0])

    async def resolve_link(self, user_id: str) -> Optional[RemoteIdentity]:
        """
        Resolve and persist the remote identity for a user's link.

        Idempotent: an already persisted, matching id is left as is.

        Returns:
            RemoteIdentity, or None when no remote account matches

        Raises:
            LinkResolutionError: ambiguous match, or the match conflicts
                with the persisted id
            AccountNotLinkedError: the user has no active link
        """
        link = await self._get_link(user_id)
        identity = await self.find_remote(link.login, link.server)
        if identity is None:
            self._log_event("link_not_found", user_id=user_id, login=link.login, server=link.server)
            return None

        if link.remote_account_id is None:
            await self.ledger.set_remote_id(user_id, identity.remote_id)
            self._log_event("link_resolved", user_id=user_id, remote_id=identity.remote_id)
        elif link.remote_account_id != identity.remote_id:
            self._log_event(
                "link_conflict",
                user_id=user_id,
                stored=link.remote_account_id,
                found=identity.remote_id,
            )
            raise LinkResolutionError(
                link.login, link.server, "conflict",
                candidates=[link.remote_account_id, identity.remote_id],
            )

        await self.ledger.update_link_state(
            user_id,
            deployment_state=identity.deployment_state,
            connection_state=identity.connection_state,
            status=LinkStatus.CONNECTED,
        )
        return identity

    async def require_link(self, user_id: str) -> Tuple[BrokerAccountLink, RemoteIdentity]:
        """Like resolve_link, but a missing remote account is an error."""
        identity = await self.resolve_link(user_id)
        link = await self._get_link(user_id)
        if identity is None:
            raise LinkResolutionError(link.login, link.server, "not_found")
        return link, identity

    async def ensure_deployed(self, identity: RemoteIdentity, user_id: Optional[str] = None) -> DeploymentState:
        """
        Move the remote account toward DEPLOYED without blocking.

        DEPLOYED and DEPLOYING are returned as is; UNDEPLOYED triggers one
        deploy request and returns DEPLOYING. Remote errors propagate.
        """
        state = identity.deployment_state
        if state is DeploymentState.UNDEPLOYED:
            await self.gateway.deploy(identity.remote_id)
            state = DeploymentState.DEPLOYING
            identity.deployment_state = state
            self._log_event("deploy_requested", remote_id=identity.remote_id, user_id=user_id)
            if user_id is not None:
                await self.ledger.update_link_state(
                    user_id, deployment_state=state, connection_state=ConnectionState.CONNECTING,
                )
        return state

    async def require_deployed(self, user_id: str) -> Tuple[BrokerAccountLink, RemoteIdentity]:
        """
        Resolve the link and demand a DEPLOYED remote account.

        Raises:
            LinkResolutionError: no usable remote identity
            DeploymentPendingError: deployment requested or still in progress
        """
        link, identity = await self.require_link(user_id)
        state = await self.ensure_deployed(identity, user_id=user_id)
        if state is not DeploymentState.DEPLOYED:
            raise DeploymentPendingError(identity.remote_id, state.value)
        return link, identity

    async def provision(
        self,
        user_id: str,
        login: str,
        password: str,
        server: str,
    ) -> Tuple[RemoteIdentity, DeploymentState]:
        """
        Register credentials, creating the remote account when none exists.

        Returns:
            (identity, deployment state after ensure_deployed)
        """
        await self.ledger.create_link(user_id, login, server)
        identity = await self.find_remote(login, server)
        if identity is None:
            created = await self.gateway.create_account(str(login), password, server)
            identity = RemoteIdentity.from_remote(created)
            self._log_event("remote_account_created", user_id=user_id, remote_id=identity.remote_id)
        identity = await self.resolve_link(user_id) or identity
        if (await self._get_link(user_id)).remote_account_id is None:
            # Freshly created accounts may not be listed yet
            await self.ledger.set_remote_id(user_id, identity.remote_id)
            await self.ledger.update_link_state(user_id, status=LinkStatus.CONNECTED)
        state = await self.ensure_deployed(identity, user_id=user_id)
        return identity, state

    async def _get_link(self, user_id: str) -> BrokerAccountLink:
        link = await self.ledger.get_link(user_id)
        if link is None:
            raise AccountNotLinkedError(user_id)
        return link
