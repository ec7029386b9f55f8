"""
Client-side orchestration of program instructions.

Given an instruction name from the catalog and whatever addresses the caller
already knows, the orchestrator resolves every account, allocates and funds
the storage accounts the instruction needs, assembles and signs the
transactions, and submits them stage by stage.
"""

import sys
import json
import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import List, Optional

from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from account_provisioner import AccountProvisioner
from account_resolver import InstructionAccountResolver
from argument_encoder import ArgumentEncoder
from instruction_catalog import load_catalog
from key_vault import KeyVault
from ledger_client import LedgerClient
from orchestrator_config import LAMPORTS_PER_SOL, OrchestratorConfig, configure_logging
from orchestrator_errors import (
    InsufficientFunds,
    LedgerRpcError,
    LedgerTransportError,
    OrchestratorError,
    Rejected,
    TimedOut,
)
from submission_retrier import RetryPolicy, SubmissionResult, SubmissionRetrier
from transaction_assembler import Operation, assemble, check_signers

logger = logging.getLogger(__name__)

# Devnet mints and Pyth price accounts used when the caller supplies none
DEVNET_WSOL_MINT = 'So11111111111111111111111111111111111111112'
DEVNET_USDC_MINT = 'Gh9ZwEmdLJ8DscKNTkTqPbNwLNNBjuSzaG9Vp2KGtKJr'
ORACLE_A_DEVNET = 'J83w4HKfqxwcq3BEMMkPFSppX3gqekLyLJBexebFVkix'  # Pyth SOL/USD
ORACLE_B_DEVNET = 'Gnt27xtC473ZT2Mw5u8wZ68Z3gULkSTb5DuxJy7eJotD'  # Pyth USDC/USD

DEVNET_KNOWN_ADDRESSES = {
    'baseMint': DEVNET_WSOL_MINT,
    'quoteMint': DEVNET_USDC_MINT,
    'oracleA': ORACLE_A_DEVNET,
    'oracleB': ORACLE_B_DEVNET,
}

DEFAULT_ARGUMENTS = {
    'createMarket': {
        'name': 'SOL-USDC',
        'oracleConfig': {'confFilter': 0.1, 'maxStalenessSlots': 100},
        'quoteLotSize': 100,   # 0.1 USDC
        'baseLotSize': 100,    # 0.1 SOL
        'makerFee': -200,      # -0.02%
        'takerFee': 400,       # 0.04%
        'timeExpiry': 0,
    },
}


@dataclass
class ProvisioningPlan:
    instruction: str
    accounts: list
    operations: List[Operation] = field(default_factory=list)
    # Holds the keys of the accounts this plan creates
    vault: Optional[KeyVault] = field(default=None, repr=False)

    def addresses(self):
        return {account.name: str(account.address) if account.address is not None else None
                for account in self.accounts}

    def to_dict(self):
        """Role -> address map plus the create-account operations, keyed '<role>Ix'."""
        funding = {account.name: account.provisioning for account in self.accounts if account.needs_create}
        instructions = {}
        for op in self.operations:
            role = op.label[:-2] if op.label.endswith('Ix') else op.label
            provisioning = funding.get(role)
            instructions[op.label] = {
                'programId': str(op.instruction.program_id),
                'newAccount': str(op.creates[0]) if op.creates else None,
                'space': provisioning.size if provisioning else None,
                'lamports': provisioning.funding if provisioning else None,
                'owner': str(provisioning.owner) if provisioning else None,
            }
        return {**self.addresses(), 'instructions': instructions or None}


class MarketOrchestrator:
    def __init__(self, catalog, ledger, config=None, vault=None, sizes=None, retrier=None, sleep=None):
        self.catalog = catalog
        self.ledger = ledger
        self.config = config or OrchestratorConfig()
        self.vault = vault or KeyVault()
        self.program_id = Pubkey.from_string(self.config.program_id)
        self.payer = self._load_payer()
        self.provisioner = AccountProvisioner(ledger)
        self.retrier = retrier or SubmissionRetrier(ledger, RetryPolicy.from_config(self.config), sleep=sleep)
        self.encoder = ArgumentEncoder(catalog)
        self.resolver = InstructionAccountResolver(
            catalog, self.vault, self.payer.pubkey(), self.program_id, sizes=sizes
        )

    def _load_payer(self):
        if self.config.private_key:
            return self.vault.external_key_for('payer', self.config.private_key)
        existing = self.vault.get('payer')
        if existing is not None:
            return existing
        # Registered as imported so it outlives the per-session key cleanup
        logger.warning("No PRIVATE_KEY configured, generating a session payer")
        return self.vault.external_key_for('payer', bytes(Keypair()))

    def list_functions(self):
        return self.catalog.list_functions()

    def known_with_defaults(self, known_addresses=None):
        known = {'payer': self.payer.pubkey()}
        if self.config.network != 'mainnet-beta':
            known.update(DEVNET_KNOWN_ADDRESSES)
        known.update(known_addresses or {})
        return known

    def available_signers(self, vault=None):
        signers = {self.payer.pubkey(): self.payer}
        for keypair in (vault or self.vault).keypairs():
            signers.setdefault(keypair.pubkey(), keypair)
        return list(signers.values())

    def _resolve(self, instruction_name, known_addresses, vault):
        descriptor = self.catalog.get(instruction_name)
        return descriptor, self.resolver.resolve(descriptor, self.known_with_defaults(known_addresses), vault)

    async def resolve_and_provision(self, instruction_name, known_addresses=None, funding_overrides=None):
        """Resolve every account of the instruction and plan the accounts it needs created."""
        session = self.vault.session()
        _, accounts = self._resolve(instruction_name, known_addresses, session)
        accounts, operations = await self.provisioner.plan_all(accounts, self.payer.pubkey(), funding_overrides)
        return ProvisioningPlan(instruction_name, accounts, operations, session)

    def build_instruction(self, descriptor, accounts, arguments=None):
        """The program call itself; absent optional accounts are passed as the program id."""
        metas = []
        for account in accounts:
            if account.is_absent:
                metas.append(AccountMeta(self.program_id, is_signer=False, is_writable=False))
            else:
                metas.append(AccountMeta(account.address, is_signer=account.signer, is_writable=account.mutable))
        values = dict(DEFAULT_ARGUMENTS.get(descriptor.name, {}))
        values.update(arguments or {})
        data = self.encoder.encode(descriptor, values)
        signers = tuple(account.address for account in accounts if account.signer and not account.is_absent)
        return Operation(label=descriptor.name, instruction=Instruction(self.program_id, data, metas), signers=signers)

    async def ensure_payer_funded(self):
        """Airdrop to the payer when its balance is under the configured minimum (devnet/testnet only)."""
        payer = self.payer.pubkey()
        balance = await self.ledger.get_balance(payer)
        logger.info(f"Payer balance: {balance / LAMPORTS_PER_SOL} SOL")
        if balance >= self.config.min_payer_balance:
            return None
        if not self.config.funding_allowed:
            raise InsufficientFunds(
                f"Insufficient balance: {balance / LAMPORTS_PER_SOL} SOL. Please fund the address: {payer}"
            )
        return await self.retrier.request_funding(payer, self.config.airdrop_lamports)

    async def _refresh(self, planned):
        freshness, _ = await self.ledger.get_latest_blockhash()
        planned.resign(freshness)

    async def submit_plan(self, plan):
        """
        Submit stage by stage. Transactions of one stage go out concurrently and
        must all confirm before the next stage is signed and sent.
        """
        results = []
        for index, stage in enumerate(plan.stages):
            if index > 0:
                freshness, _ = await self.ledger.get_latest_blockhash()
                for planned in stage:
                    planned.resign(freshness)
            stage_results = await asyncio.gather(*[
                self.retrier.submit(planned, refresh=self._refresh) for planned in stage
            ])
            results.extend(stage_results)
            for planned, result in zip(stage, stage_results):
                if not result.success:
                    logger.error(f"Stage {index} transaction {planned.labels} failed: {result.message}")
                    return result
            logger.info(f"Stage {index} confirmed: {[result.signature for result in stage_results]}")
        final = results[-1]
        return replace(final, signatures=[result.signature for result in results])

    async def build_and_submit(self, instruction_name, known_addresses=None, arguments=None):
        """
        Run a whole session for one instruction and report a typed result.

        Resolution problems are detected before any network call. Each session
        generates its keys in its own vault, discarded when the session ends, so
        concurrent sessions never share a generated account.
        """
        session = self.vault.session()
        try:
            descriptor, accounts = self._resolve(instruction_name, known_addresses, session)
            program_op = self.build_instruction(descriptor, accounts, arguments)
            check_signers([program_op], self.payer.pubkey(), self.available_signers(session))

            funding = await self.ensure_payer_funded()
            if funding is not None and not funding.success:
                return funding

            accounts, operations = await self.provisioner.plan_all(accounts, self.payer.pubkey())
            freshness, _ = await self.ledger.get_latest_blockhash()
            plan = assemble(operations + [program_op], self.payer.pubkey(), self.available_signers(session), freshness)
            logger.info(f"Transaction plan for {instruction_name}: {json.dumps(plan.to_dict())}")
            return await self.submit_plan(plan)
        except OrchestratorError as e:
            logger.error(f"{instruction_name} failed: {e.kind}: {e.message}")
            return SubmissionResult.failed(e)
        except LedgerTransportError as e:
            logger.error(f"{instruction_name} failed talking to the ledger: {e}")
            return SubmissionResult.failed(TimedOut(str(e)))
        except LedgerRpcError as e:
            logger.error(f"{instruction_name} failed: {e}")
            return SubmissionResult.failed(Rejected(e.message))
        finally:
            session.discard_generated()


def _parse_known(pairs):
    known = {}
    for pair in pairs:
        role, sep, address = pair.partition('=')
        if not sep:
            raise ValueError(f"Expected role=address, got {pair!r}")
        known[role] = address
    return known


async def run(instruction_name, known_addresses=None, arguments=None, config=None):
    config = config or OrchestratorConfig.from_env()
    catalog = load_catalog(config.catalog_source)
    tx_opts = TxOpts(skip_preflight=config.skip_preflight, preflight_commitment=Confirmed, max_retries=5)
    async with LedgerClient(config.rpc_url, timeout=config.rpc_timeout, tx_opts=tx_opts) as ledger:
        orchestrator = MarketOrchestrator(catalog, ledger, config)
        return await orchestrator.build_and_submit(instruction_name, known_addresses, arguments)


def main(argv=None):
    """Usage: market_orchestrator.py <instruction> [role=address ...]"""
    configure_logging()
    argv = sys.argv[1:] if argv is None else argv
    if not argv:
        logger.error(main.__doc__)
        return 2
    result = asyncio.run(run(argv[0], _parse_known(argv[1:])))
    logger.info(json.dumps(result.to_dict(), indent=2))
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
