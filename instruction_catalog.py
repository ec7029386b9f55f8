"""
Instruction catalog: the program's interface description (an Anchor-style IDL).

The raw document is loosely typed; it is parsed once into the closed schema
below and rejected eagerly (MalformedCatalog) if any entry does not fit, so
resolution never trips over a half-valid descriptor.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import requests

from orchestrator_errors import MalformedCatalog, UnknownInstruction

logger = logging.getLogger(__name__)

PRIMITIVE_TYPES = {
    'bool',
    'u8', 'u16', 'u32', 'u64', 'u128',
    'i8', 'i16', 'i32', 'i64', 'i128',
    'f32', 'f64',
    'string', 'bytes', 'publicKey',
}
# Newer IDLs spell the key type 'pubkey'
TYPE_ALIASES = {'pubkey': 'publicKey'}


@dataclass(frozen=True)
class IdlType:
    kind: str  # primitive | vec | option | array | defined
    name: Optional[str] = None
    inner: Optional['IdlType'] = None
    length: Optional[int] = None

    def describe(self):
        if self.kind in ('primitive', 'defined'):
            return self.name
        if self.kind == 'array':
            return f"[{self.inner.describe()}; {self.length}]"
        return f"{self.kind}<{self.inner.describe()}>"


@dataclass(frozen=True)
class AccountRequirement:
    name: str
    mutable: bool = False
    signer: bool = False
    optional: bool = False


@dataclass(frozen=True)
class ArgumentSpec:
    name: str
    type: IdlType


@dataclass(frozen=True)
class TypeDefinition:
    name: str
    kind: str  # struct | enum
    fields: Tuple[ArgumentSpec, ...] = ()
    variants: Tuple[Tuple[str, Tuple[ArgumentSpec, ...]], ...] = ()


@dataclass(frozen=True)
class InstructionDescriptor:
    name: str
    accounts: Tuple[AccountRequirement, ...]
    args: Tuple[ArgumentSpec, ...] = ()
    returns: Optional[IdlType] = None


@dataclass
class InstructionCatalog:
    instructions: Dict[str, InstructionDescriptor]
    types: Dict[str, TypeDefinition] = field(default_factory=dict)
    name: Optional[str] = None
    version: Optional[str] = None

    def has(self, name):
        return name in self.instructions

    def names(self):
        return list(self.instructions)

    def get(self, name):
        descriptor = self.instructions.get(name)
        if descriptor is None:
            raise UnknownInstruction(name)
        return descriptor

    def type_definition(self, name):
        definition = self.types.get(name)
        if definition is None:
            raise MalformedCatalog(f"Type {name} is referenced but not defined")
        return definition

    def list_functions(self):
        """Summaries of every instruction: name, argument names/types, return type."""
        return [
            {
                'name': descriptor.name,
                'arguments': [{'name': arg.name, 'type': arg.type.describe()} for arg in descriptor.args],
                'returnType': descriptor.returns.describe() if descriptor.returns else 'void',
            }
            for descriptor in self.instructions.values()
        ]


def _parse_type(raw, where):
    if isinstance(raw, str):
        name = TYPE_ALIASES.get(raw, raw)
        if name not in PRIMITIVE_TYPES:
            raise MalformedCatalog(f"{where}: unknown type {raw!r}")
        return IdlType('primitive', name=name)

    if not isinstance(raw, dict) or len(raw) != 1:
        raise MalformedCatalog(f"{where}: malformed type {raw!r}")

    (tag, value), = raw.items()
    if tag in ('vec', 'option', 'coption'):
        return IdlType('option' if tag == 'coption' else tag, inner=_parse_type(value, where))
    if tag == 'array':
        if not isinstance(value, list) or len(value) != 2 or not isinstance(value[1], int):
            raise MalformedCatalog(f"{where}: malformed array type {raw!r}")
        return IdlType('array', inner=_parse_type(value[0], where), length=value[1])
    if tag == 'defined':
        # {"defined": "Name"} or {"defined": {"name": "Name"}}
        name = value.get('name') if isinstance(value, dict) else value
        if not isinstance(name, str) or not name:
            raise MalformedCatalog(f"{where}: malformed defined type {raw!r}")
        return IdlType('defined', name=name)
    raise MalformedCatalog(f"{where}: unsupported type tag {tag!r}")


def _parse_fields(raw_fields, where):
    if not isinstance(raw_fields, list):
        raise MalformedCatalog(f"{where}: fields must be a list")
    fields = []
    for index, raw in enumerate(raw_fields):
        if not isinstance(raw, dict) or not isinstance(raw.get('name'), str) or 'type' not in raw:
            raise MalformedCatalog(f"{where}: entry {index} needs a name and a type")
        fields.append(ArgumentSpec(raw['name'], _parse_type(raw['type'], f"{where}.{raw['name']}")))
    return tuple(fields)


def _flag(raw, *keys):
    for key in keys:
        if key in raw:
            value = raw[key]
            if not isinstance(value, bool):
                raise MalformedCatalog(f"Account {raw.get('name')}: {key} must be a boolean")
            return value
    return False


def _parse_accounts(raw_accounts, where):
    if not isinstance(raw_accounts, list):
        raise MalformedCatalog(f"{where}: accounts must be a list")
    accounts = []
    for raw in raw_accounts:
        if not isinstance(raw, dict) or not isinstance(raw.get('name'), str) or not raw['name']:
            raise MalformedCatalog(f"{where}: every account needs a name")
        if 'accounts' in raw:
            # Composite account group, flattened in declared order
            accounts.extend(_parse_accounts(raw['accounts'], f"{where}.{raw['name']}"))
            continue
        accounts.append(AccountRequirement(
            name=raw['name'],
            mutable=_flag(raw, 'isMut', 'writable'),
            signer=_flag(raw, 'isSigner', 'signer'),
            optional=_flag(raw, 'isOptional', 'optional'),
        ))
    return accounts


def _parse_type_definition(raw):
    if not isinstance(raw, dict) or not isinstance(raw.get('name'), str):
        raise MalformedCatalog(f"Malformed type definition {raw!r}")
    name = raw['name']
    body = raw.get('type')
    if not isinstance(body, dict):
        raise MalformedCatalog(f"Type {name} has no body")
    if body.get('kind') == 'struct':
        return TypeDefinition(name, 'struct', fields=_parse_fields(body.get('fields', []), name))
    if body.get('kind') == 'enum':
        variants = []
        for variant in body.get('variants', []):
            if not isinstance(variant, dict) or not isinstance(variant.get('name'), str):
                raise MalformedCatalog(f"Type {name} has a malformed variant")
            variants.append((variant['name'], _parse_fields(variant.get('fields', []), f"{name}.{variant['name']}")))
        return TypeDefinition(name, 'enum', variants=tuple(variants))
    raise MalformedCatalog(f"Type {name}: unsupported kind {body.get('kind')!r}")


def parse_catalog(document):
    """Build an InstructionCatalog from a decoded IDL document."""
    if not isinstance(document, dict) or not isinstance(document.get('instructions'), list):
        raise MalformedCatalog("Catalog must be an object with an 'instructions' list")

    types = {}
    for raw in document.get('types', []) or []:
        definition = _parse_type_definition(raw)
        types[definition.name] = definition
    for definition in types.values():
        members = list(definition.fields) + [f for _, fields in definition.variants for f in fields]
        for member in members:
            _check_defined(member.type, types, definition.name)

    instructions = {}
    for raw in document['instructions']:
        if not isinstance(raw, dict) or not isinstance(raw.get('name'), str) or not raw['name']:
            raise MalformedCatalog(f"Malformed instruction entry {raw!r}")
        name = raw['name']
        if name in instructions:
            raise MalformedCatalog(f"Instruction {name} is declared twice")
        accounts = _parse_accounts(raw.get('accounts', []), name)
        seen = set()
        for account in accounts:
            if account.name in seen:
                raise MalformedCatalog(f"{name}: account {account.name} is declared twice")
            seen.add(account.name)
        args = _parse_fields(raw.get('args', []), name)
        for arg in args:
            _check_defined(arg.type, types, name)
        returns = _parse_type(raw['returns'], f"{name}.returns") if raw.get('returns') else None
        instructions[name] = InstructionDescriptor(name, tuple(accounts), args, returns)

    metadata = document.get('metadata') or {}
    catalog = InstructionCatalog(
        instructions=instructions,
        types=types,
        name=document.get('name') or metadata.get('name'),
        version=document.get('version') or metadata.get('version'),
    )
    logger.info(f"Loaded instruction catalog {catalog.name or ''} with {len(instructions)} instructions")
    return catalog


def _check_defined(idl_type, types, where):
    if idl_type.kind == 'defined' and idl_type.name not in types:
        raise MalformedCatalog(f"{where}: type {idl_type.name} is referenced but not defined")
    if idl_type.inner is not None:
        _check_defined(idl_type.inner, types, where)


def load_catalog(source, timeout=10):
    """Load a catalog from a file path or an http(s) URL."""
    if source.startswith(('http://', 'https://')):
        logger.info(f"Fetching instruction catalog from {source}")
        try:
            response = requests.get(source, timeout=timeout)
            response.raise_for_status()
            document = response.json()
        except requests.RequestException as e:
            raise MalformedCatalog(f"Could not fetch catalog from {source}: {e}") from e
        except ValueError as e:
            raise MalformedCatalog(f"Catalog at {source} is not valid JSON: {e}") from e
    else:
        try:
            with open(source, 'r', encoding='utf-8') as handle:
                document = json.load(handle)
        except ValueError as e:
            raise MalformedCatalog(f"Catalog {source} is not valid JSON: {e}") from e
    return parse_catalog(document)
