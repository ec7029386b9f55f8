import os
import logging

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.signature import Signature
from solders.transaction import Transaction

from instruction_catalog import load_catalog
from key_vault import KeyVault
from orchestrator_config import LAMPORTS_PER_SOL, LOG_FORMAT

logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

CATALOG_PATH = os.path.join(os.path.dirname(__file__), 'tests', 'data', 'openbook_v2_idl.json')

CONFIRMED = {'slot': 1, 'confirmations': None, 'err': None, 'confirmationStatus': 'confirmed'}


class FakeLedgerClient:
    """
    In-memory stand-in for LedgerClient.

    ``send_failures`` are raised by successive sends (None lets a send through);
    the first ``unconfirmed_sends`` submissions never confirm.
    """

    def __init__(self, balance=2 * LAMPORTS_PER_SOL, unconfirmed_sends=0, send_failures=None):
        self.balance = balance
        self.unconfirmed_sends = unconfirmed_sends
        self.send_failures = list(send_failures or [])
        self.rent_error = None
        self.statuses = {}
        self.sent = []
        self.sent_transactions = []
        self.airdrops = []
        self.calls = []
        self.events = []

    def _accept(self, signature):
        self.sent.append(signature)
        self.events.append(('send', signature))
        if len(self.sent) > self.unconfirmed_sends:
            self.statuses[signature] = dict(CONFIRMED)

    async def get_minimum_balance_for_rent_exemption(self, size):
        self.calls.append('getMinimumBalanceForRentExemption')
        if self.rent_error is not None:
            raise self.rent_error
        return (size + 128) * 6960

    async def get_latest_blockhash(self, commitment=None):
        self.calls.append('getLatestBlockhash')
        return Hash.new_unique(), 1000

    async def send_transaction(self, raw_transaction):
        self.calls.append('sendTransaction')
        if self.send_failures:
            error = self.send_failures.pop(0)
            if error is not None:
                raise error
        transaction = Transaction.from_bytes(bytes(raw_transaction))
        signature = str(transaction.signatures[0])
        self.sent_transactions.append(transaction)
        self._accept(signature)
        return signature

    async def get_signature_status(self, signature):
        self.calls.append('getSignatureStatuses')
        status = self.statuses.get(str(signature))
        if status is not None:
            self.events.append(('status', str(signature), status.get('confirmationStatus')))
        return status

    async def confirm(self, signature):
        status = await self.get_signature_status(signature)
        if status is None:
            return None
        if status.get('err'):
            return 'failed'
        return status.get('confirmationStatus') or 'processed'

    async def request_airdrop(self, address, lamports):
        self.calls.append('requestAirdrop')
        if self.send_failures:
            error = self.send_failures.pop(0)
            if error is not None:
                raise error
        signature = str(Signature.new_unique())
        self.airdrops.append((str(address), lamports))
        self._accept(signature)
        if signature in self.statuses:
            self.balance += lamports
        return signature

    async def get_balance(self, address):
        self.calls.append('getBalance')
        return self.balance


class FakeClock:
    """Records requested delays instead of sleeping."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def catalog():
    return load_catalog(CATALOG_PATH)


@pytest.fixture
def ledger():
    return FakeLedgerClient()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def vault():
    return KeyVault()


@pytest.fixture
def payer():
    return Keypair()
