import struct
import hashlib

import pytest
from solders.keypair import Keypair

from argument_encoder import ArgumentEncoder, instruction_discriminator, snake_case
from instruction_catalog import parse_catalog
from market_orchestrator import DEFAULT_ARGUMENTS
from orchestrator_errors import MalformedArguments


def test_snake_case_and_discriminator():
    assert snake_case('createMarket') == 'create_market'
    assert snake_case('createOpenOrdersIndexer') == 'create_open_orders_indexer'
    assert instruction_discriminator('createMarket') == hashlib.sha256(b"global:create_market").digest()[:8]


def test_create_market_defaults(catalog):
    data = ArgumentEncoder(catalog).encode(catalog.get('createMarket'), DEFAULT_ARGUMENTS['createMarket'])
    expected = (
        instruction_discriminator('createMarket')
        + struct.pack('<I', 8) + b'SOL-USDC'
        + struct.pack('<f', 0.1) + b'\x01' + struct.pack('<I', 100)
        + struct.pack('<qqqqq', 100, 100, -200, 400, 0)
    )
    assert data == expected


def test_string_inputs_are_converted(catalog):
    arguments = dict(DEFAULT_ARGUMENTS['createMarket'], quoteLotSize='100', makerFee='-200')
    encoder = ArgumentEncoder(catalog)
    descriptor = catalog.get('createMarket')
    assert encoder.encode(descriptor, arguments) == encoder.encode(descriptor, DEFAULT_ARGUMENTS['createMarket'])


def test_missing_optional_field_encodes_none(catalog):
    arguments = dict(DEFAULT_ARGUMENTS['createMarket'], oracleConfig={'confFilter': 0.1})
    data = ArgumentEncoder(catalog).encode(catalog.get('createMarket'), arguments)
    # f32 followed by the None tag of the option
    offset = 8 + 4 + len('SOL-USDC')
    assert data[offset + 4:offset + 5] == b'\x00'


def test_enum_and_option_arguments(catalog):
    arguments = {'side': 'Ask', 'priceLots': 5, 'maxBaseLots': 7, 'clientOrderId': 9, 'limit': 3}
    data = ArgumentEncoder(catalog).encode(catalog.get('placeOrder'), arguments)
    expected = (
        instruction_discriminator('placeOrder')
        + b'\x01'
        + struct.pack('<qqQ', 5, 7, 9)
        + b'\x00'
        + b'\x03'
    )
    assert data == expected

    arguments = dict(arguments, side={'Bid': {}}, expiryTimestamp=1700000000)
    data = ArgumentEncoder(catalog).encode(catalog.get('placeOrder'), arguments)
    assert data[8:9] == b'\x00'
    assert data[8 + 1 + 24:] == b'\x01' + struct.pack('<Q', 1700000000) + b'\x03'


def test_no_arguments(catalog):
    data = ArgumentEncoder(catalog).encode(catalog.get('closeMarket'), {})
    assert data == instruction_discriminator('closeMarket')


def test_public_key_and_vector_arguments():
    catalog = parse_catalog({'instructions': [{
        'name': 'setOwners',
        'accounts': [],
        'args': [{'name': 'owners', 'type': {'vec': 'publicKey'}}, {'name': 'flags', 'type': {'array': ['bool', 2]}}],
    }]})
    owners = [Keypair().pubkey(), Keypair().pubkey()]
    data = ArgumentEncoder(catalog).encode(catalog.get('setOwners'), {'owners': [str(o) for o in owners], 'flags': ['true', False]})
    assert data[8:12] == struct.pack('<I', 2)
    assert data[12:44] == bytes(owners[0])
    assert data[44:76] == bytes(owners[1])
    assert data[76:] == b'\x01\x00'


@pytest.mark.parametrize('arguments', [
    {'limit': 256},
    {'limit': -1},
    {'priceLots': 'lots'},
    {'side': 'Sideways'},
    {'side': 42},
    {'unexpected': 1},
])
def test_malformed_arguments(catalog, arguments):
    base = {'side': 'Bid', 'priceLots': 1, 'maxBaseLots': 1, 'clientOrderId': 1, 'limit': 1}
    base.update(arguments)
    with pytest.raises(MalformedArguments):
        ArgumentEncoder(catalog).encode(catalog.get('placeOrder'), base)


def test_missing_required_argument(catalog):
    with pytest.raises(MalformedArguments):
        ArgumentEncoder(catalog).encode(catalog.get('placeOrder'), {'side': 'Bid'})
