import json
import logging
import threading

import base58
import pytest
from solders.keypair import Keypair

from key_vault import KeyVault, parse_secret
from orchestrator_errors import KeyConflict, MalformedSecret

logger = logging.getLogger(__name__)


def test_same_role_returns_same_key(vault):
    first = vault.key_for('bids')
    second = vault.key_for('bids')
    assert first.pubkey() == second.pubkey()
    assert vault.key_for('asks').pubkey() != first.pubkey()


def test_concurrent_requests_get_one_key(vault):
    results = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        results.append(vault.key_for('market').pubkey())

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == 8
    assert len(set(results)) == 1
    assert vault.roles() == ['market']


def test_audit_log_records_role_and_origin(vault, payer):
    vault.key_for('bids')
    vault.external_key_for('payer', bytes(payer))
    origins = {(record.role, record.origin) for record in vault.audit_log}
    assert ('bids', 'generated') in origins
    assert ('payer', 'external') in origins
    payer_record = [record for record in vault.audit_log if record.role == 'payer'][0]
    assert payer_record.address == str(payer.pubkey())


@pytest.mark.parametrize('encode', [
    lambda keypair: bytes(keypair),
    lambda keypair: base58.b58encode(bytes(keypair)).decode('ascii'),
    lambda keypair: json.dumps(list(bytes(keypair))),
    lambda keypair: bytes(keypair).hex(),
    lambda keypair: '0x' + bytes(keypair).hex(),
])
def test_parse_secret_formats(encode):
    keypair = Keypair()
    assert parse_secret(encode(keypair)).pubkey() == keypair.pubkey()


def test_parse_secret_from_seed():
    keypair = Keypair()
    seed = bytes(keypair)[:32]
    assert parse_secret(seed).pubkey() == keypair.pubkey()


@pytest.mark.parametrize('secret', ['', 'not a key!', '[1, 2, 3]', b'\x01' * 10, None])
def test_parse_secret_rejects_garbage(secret):
    with pytest.raises(MalformedSecret):
        parse_secret(secret)


def test_external_key_conflict(vault):
    vault.key_for('payer')
    with pytest.raises(KeyConflict):
        vault.external_key_for('payer', bytes(Keypair()))


def test_external_key_same_secret_is_idempotent(vault, payer):
    first = vault.external_key_for('payer', bytes(payer))
    second = vault.external_key_for('payer', base58.b58encode(bytes(payer)).decode('ascii'))
    assert first.pubkey() == second.pubkey() == payer.pubkey()


def test_session_vault_starts_with_imported_keys_only(vault, payer):
    vault.external_key_for('payer', bytes(payer))
    vault.key_for('market')

    first, second = vault.session(), vault.session()
    assert first.roles() == second.roles() == ['payer']
    assert first.get('payer') is vault.get('payer')

    # Each session generates its own keys without touching the parent
    assert first.key_for('market').pubkey() != second.key_for('market').pubkey()
    first.discard_generated()
    assert second.get('market') is not None
    assert vault.roles() == ['payer', 'market']


def test_discard_generated_keeps_imported_keys(vault, payer):
    vault.external_key_for('payer', bytes(payer))
    market = vault.key_for('market')
    assert vault.discard_generated() == ['market']
    assert vault.get('market') is None
    assert vault.get('payer').pubkey() == payer.pubkey()
    # A new session gets a fresh key for the role
    assert vault.key_for('market').pubkey() != market.pubkey()
