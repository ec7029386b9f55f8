"""
Grouping of operations into signed transactions.

Operations are split into stages: an operation that uses an account created
by an earlier operation goes into a later stage than its creator, and a stage
is only submitted once every transaction of the previous stage is confirmed.
Operations within one stage are independent and are packed into as few
transactions as the packet size allows.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Tuple

from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from orchestrator_errors import MissingSigner, TransactionTooLarge

logger = logging.getLogger(__name__)

# Maximum serialized transaction size accepted by the network
PACKET_DATA_SIZE = 1232

KIND_PROVISION = 'provision'
KIND_PROGRAM = 'program'


@dataclass(frozen=True)
class Operation:
    label: str
    instruction: Instruction
    signers: Tuple[Pubkey, ...] = ()
    creates: Tuple[Pubkey, ...] = ()
    kind: str = KIND_PROGRAM

    def __post_init__(self):
        signing = {meta.pubkey for meta in self.instruction.accounts if meta.is_signer}
        unmarked = [str(key) for key in self.signers if key not in signing]
        if unmarked:
            raise ValueError(f"{self.label}: declared signers {unmarked} are not signer accounts of the instruction")

    @property
    def consumes(self):
        return tuple(meta.pubkey for meta in self.instruction.accounts)


def _compile(operations, payer, freshness):
    return Message.new_with_blockhash([op.instruction for op in operations], payer, freshness)


def _required_signers(message):
    return list(message.account_keys[:message.header.num_required_signatures])


def _serialized_size(message):
    # Unsigned transactions carry placeholder signatures of the final size
    return len(bytes(Transaction.new_unsigned(message)))


@dataclass
class PlannedTransaction:
    stage: int
    operations: List[Operation]
    signers: List[Keypair]
    payer: Pubkey
    transaction: Transaction

    @property
    def signature(self):
        return str(self.transaction.signatures[0])

    @property
    def signer_addresses(self):
        return [str(keypair.pubkey()) for keypair in self.signers]

    @property
    def labels(self):
        return [op.label for op in self.operations]

    def serialize(self):
        return bytes(self.transaction)

    def resign(self, freshness: Hash):
        """Rebuild against a new blockhash with the same signers (new signature)."""
        message = _compile(self.operations, self.payer, freshness)
        self.transaction = Transaction(self.signers, message, freshness)
        logger.info(f"Re-signed stage {self.stage} transaction {self.labels} as {self.signature}")
        return self


@dataclass
class TransactionPlan:
    payer: Pubkey
    freshness: Hash
    stages: List[List[PlannedTransaction]] = field(default_factory=list)

    @property
    def transactions(self):
        return [planned for stage in self.stages for planned in stage]

    @property
    def operations(self):
        return [op for planned in self.transactions for op in planned.operations]

    @property
    def signers(self):
        seen = {}
        for planned in self.transactions:
            for keypair in planned.signers:
                seen.setdefault(keypair.pubkey(), keypair)
        return list(seen.values())

    def to_dict(self):
        return {
            'payer': str(self.payer),
            'freshness': str(self.freshness),
            'stages': [
                [
                    {
                        'operations': planned.labels,
                        'kinds': [op.kind for op in planned.operations],
                        'signers': planned.signer_addresses,
                        'signature': planned.signature,
                        'size': len(planned.serialize()),
                    }
                    for planned in stage
                ]
                for stage in self.stages
            ],
        }


def check_signers(ops: Iterable[Operation], payer: Pubkey, required_signers: Iterable[Keypair]):
    """Raise MissingSigner if ``ops`` need a signature none of ``required_signers`` can make."""
    available = {keypair.pubkey() for keypair in required_signers}
    message = _compile(list(ops), payer, Hash.default())
    missing = [key for key in _required_signers(message) if key not in available]
    if missing:
        raise MissingSigner(missing)


def stage_operations(operations):
    """Assign each operation the stage after the latest creator of an account it uses."""
    stages = []
    created_at = {}
    for op in operations:
        own = set(op.creates)
        depends = [created_at[key] for key in op.consumes if key in created_at and key not in own]
        stage = max(depends) + 1 if depends else 0
        stages.append(stage)
        for key in op.creates:
            created_at.setdefault(key, stage)
    return stages


def assemble(ops: Iterable[Operation], payer: Pubkey, required_signers: Iterable[Keypair], freshness: Hash):
    """
    Build the signed transactions for ``ops``.

    Raises:
        MissingSigner: a transaction needs a signature no keypair in
            ``required_signers`` can provide. Raised before anything is signed.
        TransactionTooLarge: a single operation does not fit in one packet.
    """
    ops = list(ops)
    signer_map = {}
    for keypair in required_signers:
        signer_map.setdefault(keypair.pubkey(), keypair)

    grouped = {}
    for op, stage in zip(ops, stage_operations(ops)):
        grouped.setdefault(stage, []).append(op)

    # Pack every stage first so signer problems surface before any signing
    packed = []
    for stage in sorted(grouped):
        batches = []
        current = []
        for op in grouped[stage]:
            candidate = current + [op]
            if _serialized_size(_compile(candidate, payer, freshness)) <= PACKET_DATA_SIZE:
                current = candidate
                continue
            if not current:
                raise TransactionTooLarge(f"Operation {op.label} does not fit in a {PACKET_DATA_SIZE}-byte transaction")
            batches.append(current)
            current = [op]
            if _serialized_size(_compile(current, payer, freshness)) > PACKET_DATA_SIZE:
                raise TransactionTooLarge(f"Operation {op.label} does not fit in a {PACKET_DATA_SIZE}-byte transaction")
        if current:
            batches.append(current)
        for batch in batches:
            message = _compile(batch, payer, freshness)
            required = _required_signers(message)
            missing = [key for key in required if key not in signer_map]
            if missing:
                raise MissingSigner(missing, stage)
            packed.append((stage, batch, message, [signer_map[key] for key in required]))

    plan = TransactionPlan(payer=payer, freshness=freshness)
    for stage, batch, message, signers in packed:
        while len(plan.stages) <= stage:
            plan.stages.append([])
        planned = PlannedTransaction(
            stage=stage,
            operations=batch,
            signers=signers,
            payer=payer,
            transaction=Transaction(signers, message, freshness),
        )
        plan.stages[stage].append(planned)
        logger.info(
            f"Assembled stage {stage} transaction {planned.labels} "
            f"({len(planned.serialize())} bytes) signed by {planned.signer_addresses}"
        )
    return plan
