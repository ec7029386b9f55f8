import logging

import pytest
from solders import system_program
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from account_resolver import (
    InstructionAccountResolver,
    RULE_ABSENT,
    RULE_CONSTANT,
    RULE_DERIVED,
    RULE_KNOWN,
    RULE_PAYER_DEFAULT,
    RULE_SIGNER,
)
from account_sizes import AccountSizeTable
from address_book import AddressBook
from instruction_catalog import InstructionDescriptor
from orchestrator_config import DEFAULT_PROGRAM_ID
from orchestrator_errors import InvalidAddress, UnknownInstruction

logger = logging.getLogger(__name__)

PROGRAM_ID = Pubkey.from_string(DEFAULT_PROGRAM_ID)
WSOL = Pubkey.from_string('So11111111111111111111111111111111111111112')
USDC = Pubkey.from_string('Gh9ZwEmdLJ8DscKNTkTqPbNwLNNBjuSzaG9Vp2KGtKJr')


@pytest.fixture
def resolver(catalog, vault, payer):
    return InstructionAccountResolver(catalog, vault, payer.pubkey(), PROGRAM_ID)


def _by_name(accounts):
    return {account.name: account for account in accounts}


def test_create_market_without_known_addresses(resolver, catalog):
    accounts = resolver.resolve_by_name('createMarket')
    resolved = _by_name(accounts)
    created = [account for account in accounts if account.needs_create]
    logger.info(f"Accounts to create: {[account.name for account in created]}")

    assert {'market', 'bids', 'asks', 'eventHeap'} <= {account.name for account in created}
    table = AccountSizeTable()
    for account in created:
        assert account.provisioning.size == table.size_for(account.name)
        assert account.provisioning.owner == PROGRAM_ID
        assert account.provisioning.funding is None
    assert resolved['bids'].provisioning.size == 65536
    assert resolved['eventHeap'].provisioning.size == 65536
    assert resolved['market'].provisioning.size == 1024


def test_known_address_is_used_as_is(resolver):
    quote_mint = Keypair().pubkey()
    resolved = _by_name(resolver.resolve_by_name('createMarket', {'quoteMint': str(quote_mint)}))
    assert resolved['quoteMint'].address == quote_mint
    assert resolved['quoteMint'].rule == RULE_KNOWN
    assert resolved['quoteMint'].provisioning is None


def test_every_slot_is_resolved_in_order(resolver, catalog):
    descriptor = catalog.get('createMarket')
    accounts = resolver.resolve(descriptor, {'payer': str(Keypair().pubkey())})
    assert [account.name for account in accounts] == [requirement.name for requirement in descriptor.accounts]
    for account, requirement in zip(accounts, descriptor.accounts):
        assert account.address is not None or requirement.optional
        assert account.mutable == requirement.mutable
        assert account.signer == requirement.signer


def test_constants_win_over_known_addresses(resolver):
    resolved = _by_name(resolver.resolve_by_name('createMarket', {'systemProgram': str(Keypair().pubkey())}))
    assert resolved['systemProgram'].address == system_program.ID
    assert resolved['systemProgram'].rule == RULE_CONSTANT
    assert resolved['program'].address == PROGRAM_ID


def test_resolution_is_deterministic(resolver):
    known = {'baseMint': str(WSOL), 'quoteMint': str(USDC)}
    first = [account.address for account in resolver.resolve_by_name('createMarket', known)]
    second = [account.address for account in resolver.resolve_by_name('createMarket', known)]
    assert first == second


def test_optional_slots_without_address_are_absent(resolver):
    oracle = Keypair().pubkey()
    resolved = _by_name(resolver.resolve_by_name('createMarket', {'oracleA': str(oracle)}))
    assert resolved['oracleA'].address == oracle
    assert resolved['oracleB'].is_absent
    assert resolved['oracleB'].rule == RULE_ABSENT
    assert resolved['openOrdersAdmin'].is_absent


def test_derived_addresses(resolver):
    resolved = _by_name(resolver.resolve_by_name('createMarket', {'baseMint': str(WSOL), 'quoteMint': str(USDC)}))
    book = AddressBook(PROGRAM_ID)
    market = resolved['market'].address
    authority = book.market_authority(market)
    assert resolved['marketAuthority'].address == authority
    assert resolved['marketAuthority'].rule == RULE_DERIVED
    # Vaults are declared before the mints but still derive from them
    assert resolved['marketBaseVault'].address == book.associated_token_address(authority, WSOL)
    assert resolved['marketQuoteVault'].address == book.associated_token_address(authority, USDC)
    assert not resolved['marketBaseVault'].needs_create
    assert resolved['eventAuthority'].address == book.event_authority()


def test_known_market_drives_authority(resolver):
    market = Keypair().pubkey()
    resolved = _by_name(resolver.resolve_by_name('createMarket', {'market': str(market)}))
    assert resolved['market'].rule == RULE_KNOWN
    assert not resolved['market'].needs_create
    assert resolved['marketAuthority'].address == AddressBook(PROGRAM_ID).market_authority(market)


def test_signer_slot_uses_vault_key_or_payer(resolver, vault, payer):
    resolved = _by_name(resolver.resolve_by_name('closeMarket'))
    assert resolved['closeMarketAdmin'].rule == RULE_SIGNER
    assert resolved['closeMarketAdmin'].address == payer.pubkey()

    admin = vault.key_for('closeMarketAdmin')
    resolved = _by_name(resolver.resolve_by_name('closeMarket'))
    assert resolved['closeMarketAdmin'].address == admin.pubkey()


def test_read_only_slot_falls_back_to_payer(resolver, payer):
    resolved = _by_name(resolver.resolve_by_name('createMarket'))
    assert resolved['collectFeeAdmin'].rule == RULE_PAYER_DEFAULT
    assert resolved['collectFeeAdmin'].address == payer.pubkey()


def test_invalid_known_address(resolver):
    with pytest.raises(InvalidAddress):
        resolver.resolve_by_name('createMarket', {'quoteMint': 'not-an-address'})


def test_descriptor_outside_catalog(resolver):
    with pytest.raises(UnknownInstruction):
        resolver.resolve(InstructionDescriptor('ghost', ()))
    with pytest.raises(UnknownInstruction):
        resolver.resolve_by_name('ghost')


def test_to_dict(resolver):
    resolved = _by_name(resolver.resolve_by_name('createMarket'))
    data = resolved['bids'].to_dict()
    assert data['rule'] == 'allocate'
    assert data['provisioning']['size'] == 65536
    assert resolved['oracleA'].to_dict()['address'] is None
