import asyncio
import logging

from solders.pubkey import Pubkey
from solders.system_program import CreateAccountParams, create_account

from orchestrator_errors import LedgerRpcError, LedgerTransportError, RentQueryUnavailable
from transaction_assembler import KIND_PROVISION, Operation

logger = logging.getLogger(__name__)


class AccountProvisioner:
    """Turns NeedsCreate accounts into funded system-program create-account operations."""

    def __init__(self, ledger):
        self.ledger = ledger
        self._rent_cache = {}

    async def minimum_balance(self, size):
        """Rent-exempt balance for ``size`` bytes; network failures are a hard stop."""
        if size in self._rent_cache:
            return self._rent_cache[size]
        try:
            lamports = await self.ledger.get_minimum_balance_for_rent_exemption(size)
        except (LedgerRpcError, LedgerTransportError) as e:
            raise RentQueryUnavailable(f"Could not query rent for {size} bytes: {e}") from e
        self._rent_cache[size] = lamports
        return lamports

    async def plan_creation(self, resolved, payer: Pubkey, funding_override=None):
        """
        Build the create-account operation for one resolved account.

        Returns:
            (account with funding filled in, Operation)
        """
        if not resolved.needs_create:
            raise ValueError(f"Account {resolved.name} does not need to be created")
        provisioning = resolved.provisioning
        if funding_override is not None:
            lamports = int(funding_override)
        elif provisioning.funding is not None:
            lamports = provisioning.funding
        else:
            lamports = await self.minimum_balance(provisioning.size)

        instruction = create_account(CreateAccountParams(
            from_pubkey=payer,
            to_pubkey=resolved.address,
            lamports=lamports,
            space=provisioning.size,
            owner=provisioning.owner,
        ))
        logger.info(
            f"Planned creation of {resolved.name} ({resolved.address}): "
            f"{provisioning.size} bytes, {lamports} lamports, owner {provisioning.owner}"
        )
        operation = Operation(
            label=f"{resolved.name}Ix",
            instruction=instruction,
            signers=(payer, resolved.address),
            creates=(resolved.address,),
            kind=KIND_PROVISION,
        )
        return resolved.with_funding(lamports), operation

    async def plan_all(self, accounts, payer: Pubkey, overrides=None):
        """
        Plan every NeedsCreate account concurrently and wait for all of them.

        Returns:
            (accounts with funding filled in, in the original order; operations)
        """
        overrides = overrides or {}
        pending = [account for account in accounts if account.needs_create]
        planned = await asyncio.gather(*[
            self.plan_creation(account, payer, overrides.get(account.name)) for account in pending
        ])
        funded = {account.name: account for account, _ in planned}
        return [funded.get(account.name, account) for account in accounts], [op for _, op in planned]
