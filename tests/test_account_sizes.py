from account_sizes import (
    ACCOUNT_SIZES,
    AccountSizeTable,
    DEFAULT_ACCOUNT_SIZE,
    normalize_role,
    size_for,
)


def test_known_roles_use_configured_sizes():
    assert size_for('bids') == 65536
    assert size_for('asks') == 65536
    assert size_for('market') == 1024
    assert size_for('openOrdersIndexer') == 4096


def test_role_matching_ignores_case_and_separators():
    assert normalize_role('eventHeap') == normalize_role('EVENT_HEAP') == normalize_role('event_heap')
    assert size_for('eventHeap') == ACCOUNT_SIZES['EVENT_HEAP']
    assert size_for('open_orders') == ACCOUNT_SIZES['OPEN_ORDERS']


def test_unknown_role_gets_default():
    assert size_for('somethingElse') == DEFAULT_ACCOUNT_SIZE


def test_custom_table_and_default():
    table = AccountSizeTable(sizes={'vault': 165}, default=200, extra={'BIDS': 90000})
    assert table.size_for('vault') == 165
    assert table.size_for('bids') == 90000
    assert table.size_for('asks') == 200
    assert 'Vault' in table
    assert 'asks' not in table


def test_extra_overrides_defaults():
    table = AccountSizeTable(extra={'market': 2048})
    assert table.size_for('market') == 2048
    assert table.size_for('bids') == 65536
