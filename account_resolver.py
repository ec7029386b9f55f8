"""
Instruction account resolution.

Each account slot of an instruction is run through RESOLUTION_RULES in order
and the first rule that produces a value wins. Constants and caller-supplied
addresses come first, so resolving twice with the same known addresses gives
the same result for every slot that does not need a fresh account.
"""

import logging
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional, Tuple

from solders.pubkey import Pubkey
from solders import system_program
from solders.sysvar import RENT
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID

from account_sizes import AccountSizeTable
from address_book import AddressBook
from orchestrator_errors import InvalidAddress, UnknownInstruction

logger = logging.getLogger(__name__)

RULE_CONSTANT = 'constant'
RULE_KNOWN = 'known'
RULE_DERIVED = 'derived'
RULE_ALLOCATE = 'allocate'
RULE_ABSENT = 'absent'
RULE_SIGNER = 'signer'
RULE_PAYER_DEFAULT = 'payer_default'


@dataclass(frozen=True)
class NeedsCreate:
    size: int
    owner: Pubkey
    funding: Optional[int] = None


@dataclass(frozen=True)
class ResolvedAccount:
    name: str
    address: Optional[Pubkey]
    rule: str
    mutable: bool = False
    signer: bool = False
    provisioning: Optional[NeedsCreate] = None

    @property
    def is_absent(self):
        return self.address is None

    @property
    def needs_create(self):
        return self.provisioning is not None

    def with_funding(self, lamports):
        if self.provisioning is None:
            raise ValueError(f"Account {self.name} is not provisioned")
        return replace(self, provisioning=replace(self.provisioning, funding=lamports))

    def to_dict(self):
        data = {
            'name': self.name,
            'address': str(self.address) if self.address is not None else None,
            'rule': self.rule,
            'mutable': self.mutable,
            'signer': self.signer,
        }
        if self.provisioning is not None:
            data['provisioning'] = {
                'size': self.provisioning.size,
                'owner': str(self.provisioning.owner),
                'funding': self.provisioning.funding,
            }
        return data


@dataclass(frozen=True)
class Derivation:
    inputs: Tuple[str, ...]
    compute: Callable


# Program-derived accounts of the configured catalog; inputs name other slots
DERIVATIONS = {
    'eventAuthority': Derivation((), lambda book: book.event_authority()),
    'marketAuthority': Derivation(('market',), lambda book, market: book.market_authority(market)),
    'marketBaseVault': Derivation(
        ('marketAuthority', 'baseMint'),
        lambda book, authority, mint: book.associated_token_address(authority, mint),
    ),
    'marketQuoteVault': Derivation(
        ('marketAuthority', 'quoteMint'),
        lambda book, authority, mint: book.associated_token_address(authority, mint),
    ),
}


def well_known_addresses(program_id):
    return {
        'systemProgram': system_program.ID,
        'tokenProgram': TOKEN_PROGRAM_ID,
        'associatedTokenProgram': ASSOCIATED_TOKEN_PROGRAM_ID,
        'rent': RENT,
        'program': program_id,
    }


def to_pubkey(value, role=None):
    if isinstance(value, Pubkey):
        return value
    try:
        return Pubkey.from_string(str(value))
    except ValueError as e:
        raise InvalidAddress(f"Address for {role or 'account'} is not valid: {value!r}") from e


class _Resolution:
    """State of one resolve() call; slots may be resolved out of order by derivations."""

    def __init__(self, resolver, descriptor, known, vault):
        self.resolver = resolver
        self.vault = vault
        self.descriptor = descriptor
        self.known = known
        self.requirements = {requirement.name: requirement for requirement in descriptor.accounts}
        self.resolved: Dict[str, ResolvedAccount] = {}
        self._in_progress = set()

    def address_of(self, role):
        """Address of another slot, resolving it first if needed; None if unavailable."""
        if role in self.resolved:
            return self.resolved[role].address
        if role in self.requirements and role not in self._in_progress:
            return self.resolve(self.requirements[role]).address
        constant = self.resolver.constants.get(role)
        if constant is not None:
            return constant
        return self.known.get(role)

    def resolve(self, requirement):
        if requirement.name in self.resolved:
            return self.resolved[requirement.name]
        self._in_progress.add(requirement.name)
        try:
            for rule in RESOLUTION_RULES:
                account = rule(self, requirement)
                if account is not None:
                    break
        finally:
            self._in_progress.discard(requirement.name)
        self.resolved[requirement.name] = account
        logger.info(f"Resolved {requirement.name} -> {account.address} ({account.rule})")
        return account


def _account(requirement, address, rule, provisioning=None):
    return ResolvedAccount(
        name=requirement.name,
        address=address,
        rule=rule,
        mutable=requirement.mutable,
        signer=requirement.signer,
        provisioning=provisioning,
    )


def constant_rule(state, requirement):
    address = state.resolver.constants.get(requirement.name)
    if address is not None:
        return _account(requirement, address, RULE_CONSTANT)
    return None


def known_rule(state, requirement):
    address = state.known.get(requirement.name)
    if address is not None:
        return _account(requirement, address, RULE_KNOWN)
    return None


def derived_rule(state, requirement):
    derivation = state.resolver.derivations.get(requirement.name)
    if derivation is None:
        return None
    inputs = [state.address_of(role) for role in derivation.inputs]
    if any(value is None for value in inputs):
        return None
    return _account(requirement, derivation.compute(state.resolver.address_book, *inputs), RULE_DERIVED)


def allocate_rule(state, requirement):
    if not requirement.mutable:
        return None
    resolver = state.resolver
    keypair = state.vault.key_for(requirement.name)
    provisioning = NeedsCreate(size=resolver.sizes.size_for(requirement.name), owner=resolver.program_id)
    return _account(requirement, keypair.pubkey(), RULE_ALLOCATE, provisioning)


def absent_rule(state, requirement):
    if requirement.optional:
        return _account(requirement, None, RULE_ABSENT)
    return None


def signer_rule(state, requirement):
    if not requirement.signer:
        return None
    keypair = state.vault.get(requirement.name)
    address = keypair.pubkey() if keypair is not None else state.resolver.payer
    return _account(requirement, address, RULE_SIGNER)


def payer_default_rule(state, requirement):
    # Unresolved read-only slots fall back to the fee payer; this can hide a
    # missing address, see DESIGN.md
    logger.warning(f"No address for {requirement.name}, defaulting to fee payer {state.resolver.payer}")
    return _account(requirement, state.resolver.payer, RULE_PAYER_DEFAULT)


RESOLUTION_RULES = (
    constant_rule,
    known_rule,
    derived_rule,
    allocate_rule,
    absent_rule,
    signer_rule,
    payer_default_rule,
)


class InstructionAccountResolver:
    def __init__(self, catalog, vault, payer, program_id, sizes=None, constants=None, derivations=None):
        self.catalog = catalog
        self.vault = vault
        self.payer = to_pubkey(payer, 'payer')
        self.program_id = to_pubkey(program_id, 'program')
        self.sizes = sizes or AccountSizeTable()
        self.address_book = AddressBook(self.program_id)
        self.constants = constants if constants is not None else well_known_addresses(self.program_id)
        self.derivations = derivations if derivations is not None else DERIVATIONS

    def resolve(self, descriptor, known_addresses=None, vault=None):
        """
        Resolve every account slot of ``descriptor``, in declared order.

        Keys are drawn from ``vault`` when given, otherwise from the resolver's own.
        """
        if not self.catalog.has(descriptor.name):
            raise UnknownInstruction(descriptor.name)
        known = {role: to_pubkey(address, role) for role, address in (known_addresses or {}).items()}
        unused = set(known) - {requirement.name for requirement in descriptor.accounts}
        if unused:
            logger.debug(f"Known addresses not used by {descriptor.name}: {', '.join(sorted(unused))}")

        state = _Resolution(self, descriptor, known, vault if vault is not None else self.vault)
        accounts = [state.resolve(requirement) for requirement in descriptor.accounts]
        logger.info(
            f"Resolved {len(accounts)} accounts for {descriptor.name} "
            f"({sum(1 for account in accounts if account.needs_create)} to create)"
        )
        return accounts

    def resolve_by_name(self, instruction_name, known_addresses=None, vault=None):
        return self.resolve(self.catalog.get(instruction_name), known_addresses, vault)
