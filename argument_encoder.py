"""Borsh encoding of program arguments described by the instruction catalog."""

import re
import hashlib
import logging

from borsh_construct import (
    Bool, Bytes, CStruct, Enum, F32, F64, I8, I16, I32, I64, I128,
    Option, String, U8, U16, U32, U64, U128, Vec,
)
from solders.pubkey import Pubkey

from orchestrator_errors import MalformedArguments

logger = logging.getLogger(__name__)

PRIMITIVE_LAYOUTS = {
    'bool': Bool,
    'u8': U8, 'u16': U16, 'u32': U32, 'u64': U64, 'u128': U128,
    'i8': I8, 'i16': I16, 'i32': I32, 'i64': I64, 'i128': I128,
    'f32': F32, 'f64': F64,
    'string': String,
    'bytes': Bytes,
    'publicKey': U8[32],
}

INTEGER_BITS = {
    'u8': 8, 'u16': 16, 'u32': 32, 'u64': 64, 'u128': 128,
    'i8': 8, 'i16': 16, 'i32': 32, 'i64': 64, 'i128': 128,
}


def snake_case(name):
    return re.sub(r'(?<!^)(?=[A-Z])', '_', name).lower()


def instruction_discriminator(name):
    """First 8 bytes of sha256('global:<snake_case name>')."""
    return hashlib.sha256(f"global:{snake_case(name)}".encode()).digest()[:8]


class ArgumentEncoder:
    def __init__(self, catalog):
        self.catalog = catalog
        self._defined = {}

    def layout_for(self, idl_type):
        if idl_type.kind == 'primitive':
            return PRIMITIVE_LAYOUTS[idl_type.name]
        if idl_type.kind == 'vec':
            return Vec(self.layout_for(idl_type.inner))
        if idl_type.kind == 'option':
            return Option(self.layout_for(idl_type.inner))
        if idl_type.kind == 'array':
            return self.layout_for(idl_type.inner)[idl_type.length]
        return self._defined_layout(idl_type.name)

    def _defined_layout(self, name):
        if name not in self._defined:
            definition = self.catalog.type_definition(name)
            if definition.kind == 'struct':
                layout = CStruct(*[field.name / self.layout_for(field.type) for field in definition.fields])
            else:
                # Unit variants are passed by name
                layout = Enum(
                    *[variant / CStruct(*[f.name / self.layout_for(f.type) for f in fields]) if fields else variant
                      for variant, fields in definition.variants],
                    enum_name=name,
                )
            self._defined[name] = layout
        return self._defined[name]

    def _value(self, idl_type, value, path):
        kind = idl_type.kind
        if kind == 'primitive':
            return self._primitive(idl_type.name, value, path)
        if kind == 'option':
            return None if value is None else self._value(idl_type.inner, value, path)
        if kind in ('vec', 'array'):
            if isinstance(value, (str, bytes)) or not hasattr(value, '__iter__'):
                raise MalformedArguments(f"{path}: expected a list, got {value!r}")
            items = [self._value(idl_type.inner, item, f"{path}[{i}]") for i, item in enumerate(value)]
            if kind == 'array' and len(items) != idl_type.length:
                raise MalformedArguments(f"{path}: expected {idl_type.length} items, got {len(items)}")
            return items

        definition = self.catalog.type_definition(idl_type.name)
        if definition.kind == 'struct':
            if not isinstance(value, dict):
                raise MalformedArguments(f"{path}: expected an object for {definition.name}")
            return self._fields(definition.fields, value, path)

        # Enum: 'Variant' or {'Variant': {fields}}
        if isinstance(value, str):
            variant_name, variant_value = value, {}
        elif isinstance(value, dict) and len(value) == 1:
            (variant_name, variant_value), = value.items()
        else:
            raise MalformedArguments(f"{path}: expected a variant of {definition.name}, got {value!r}")
        fields = dict(definition.variants).get(variant_name)
        if fields is None:
            raise MalformedArguments(f"{path}: {variant_name!r} is not a variant of {definition.name}")
        variant = getattr(self._defined_layout(definition.name).enum, variant_name)
        return variant(**self._fields(fields, variant_value or {}, f"{path}.{variant_name}"))

    def _fields(self, fields, values, path):
        result = {}
        for field in fields:
            if field.name not in values:
                if field.type.kind == 'option':
                    result[field.name] = None
                    continue
                raise MalformedArguments(f"{path}: missing field {field.name}")
            result[field.name] = self._value(field.type, values[field.name], f"{path}.{field.name}")
        return result

    @staticmethod
    def _primitive(name, value, path):
        try:
            if name == 'bool':
                if isinstance(value, str):
                    if value.lower() not in ('true', 'false'):
                        raise ValueError(value)
                    return value.lower() == 'true'
                return bool(value)
            if name in INTEGER_BITS:
                number = int(value)
                bits = INTEGER_BITS[name]
                low, high = (0, 2 ** bits - 1) if name.startswith('u') else (-2 ** (bits - 1), 2 ** (bits - 1) - 1)
                if not low <= number <= high:
                    raise MalformedArguments(f"{path}: {number} does not fit in {name}")
                return number
            if name in ('f32', 'f64'):
                return float(value)
            if name == 'string':
                return str(value)
            if name == 'bytes':
                return bytes(value)
            pubkey = value if isinstance(value, Pubkey) else Pubkey.from_string(str(value))
            return list(bytes(pubkey))
        except (TypeError, ValueError) as e:
            raise MalformedArguments(f"{path}: {value!r} is not a valid {name}") from e

    def encode(self, descriptor, arguments):
        """Discriminator followed by the Borsh-encoded arguments, in declared order."""
        arguments = arguments or {}
        unknown = set(arguments) - {arg.name for arg in descriptor.args}
        if unknown:
            raise MalformedArguments(f"{descriptor.name}: unknown argument(s) {', '.join(sorted(unknown))}")
        values = self._fields(descriptor.args, arguments, descriptor.name)
        layout = CStruct(*[arg.name / self.layout_for(arg.type) for arg in descriptor.args])
        data = instruction_discriminator(descriptor.name) + layout.build(values)
        logger.debug(f"Encoded {descriptor.name} arguments into {len(data)} bytes")
        return data
