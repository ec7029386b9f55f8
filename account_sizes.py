import re
import logging

logger = logging.getLogger(__name__)

# Byte sizes for storage accounts the program expects to be pre-allocated
ACCOUNT_SIZES = {
    'BIDS': 65536,
    'ASKS': 65536,
    'EVENT_HEAP': 65536,
    'OPEN_ORDERS': 8192,
    'OPEN_ORDERS_INDEXER': 4096,
    'MARKET': 1024,
    'STUB_ORACLE': 512,
}

# Used for any role the table does not list
DEFAULT_ACCOUNT_SIZE = 1024


def normalize_role(role):
    """'eventHeap', 'event_heap' and 'EVENT_HEAP' all normalize to 'EVENTHEAP'."""
    return re.sub(r'[^A-Za-z0-9]', '', str(role)).upper()


class AccountSizeTable:
    def __init__(self, sizes=None, default=DEFAULT_ACCOUNT_SIZE, extra=None):
        table = dict(ACCOUNT_SIZES if sizes is None else sizes)
        table.update(extra or {})
        self.default = default
        self._sizes = {normalize_role(role): int(size) for role, size in table.items()}

    def size_for(self, role):
        size = self._sizes.get(normalize_role(role))
        if size is None:
            logger.debug(f"No size configured for {role}, using default {self.default} bytes")
            return self.default
        return size

    def __contains__(self, role):
        return normalize_role(role) in self._sizes


_default_table = AccountSizeTable()


def size_for(role):
    return _default_table.size_for(role)
