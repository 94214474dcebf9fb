"""
Parser for the metadata column of an instruction definition.

The column is a whitespace-separated list of clauses. A clause is a bare
boolean marker, a "key=value" pair or a flag effect "register.bit=E".
Words that name a macro are replaced by the macro's text before the
clauses are parsed.
"""

from __future__ import annotations

import re
from collections.abc import Iterator, Mapping
from enum import Enum
from typing import Any, TypeVar

from ..input import (
    BadInput,
    InputLocation,
    MalformedField,
    RecursiveMacro,
    UnknownFlagBit,
    UnknownMetadataKey,
)
from ..metadata import (
    BOOLEAN_KEYS,
    DEFAULT_METADATA,
    VALUE_KEYS,
    BranchType,
    CpuidRequirement,
    DeltaExpr,
    FlagEffect,
    Form,
    InstructionMetadata,
    LockAttr,
)
from ..tables import Tables
from .tokens import split_words

_re_clause = re.compile(r"([A-Za-z_][A-Za-z0-9_.]*)=(\S*)")
_re_name = re.compile(r"[a-z][a-z0-9_.]*")
_re_feature = re.compile(r"[a-z0-9_.]+")
_re_alternative_sep = re.compile(r"\|")
_re_conjunction_sep = re.compile(r"\+")
_re_shorthand_sep = re.compile(r"-")
_re_delta_term = re.compile(r"([+-])?(?:([0-9]+)(\*os)?|os)")

type FlagEffects = dict[str, dict[str, FlagEffect]]

E = TypeVar("E", bound=Enum)


def expand_macros(
    location: InputLocation, macros: Mapping[str, str]
) -> Iterator[InputLocation]:
    """
    Yield the clauses in the given metadata text, with macros expanded.

    Clauses that originate from a macro have a location in the macro text.
    Raises `RecursiveMacro` if a macro expands to itself.
    """
    yield from _expand(location, macros, ())


def _expand(
    location: InputLocation, macros: Mapping[str, str], active: tuple[str, ...]
) -> Iterator[InputLocation]:
    for word in split_words(location):
        name = word.text
        expansion = macros.get(name)
        if expansion is None:
            yield word
        elif name in active:
            chain = " -> ".join((*active, name))
            raise RecursiveMacro.with_text(f"recursive macro ({chain})", word)
        else:
            macro_loc = InputLocation.from_string(expansion, f"<macro {name}>")
            yield from _expand(macro_loc, macros, (*active, name))


def parse_metadata(
    location: InputLocation, tables: Tables
) -> tuple[dict[str, Any], FlagEffects]:
    """
    Parse a metadata string.

    Returns the explicitly specified field values, keyed by the field names
    of `InstructionMetadata`, and the flag effects per flag register.
    Raises `BadInput` for the first clause that cannot be parsed.
    """
    fields: dict[str, Any] = {}
    flags: FlagEffects = {}
    for clause in expand_macros(location, tables.macros):
        text = clause.text
        if text in BOOLEAN_KEYS:
            if text in fields:
                raise MalformedField.with_text("repeated metadata clause", clause)
            fields[text] = True
            continue

        match = clause.match(_re_clause)
        if match is None:
            raise UnknownMetadataKey.with_text("unknown metadata clause", clause)
        key_loc = match.group(1)
        value_loc = match.group(2)
        key = key_loc.text
        if "." in key:
            reg, bit, effect = _parse_flag_effect(key_loc, value_loc, tables)
            bits = flags.setdefault(reg, {})
            if bit in bits:
                raise MalformedField.with_text("repeated flag effect", clause)
            bits[bit] = effect
            continue

        try:
            field_name = VALUE_KEYS[key]
        except KeyError:
            raise UnknownMetadataKey.with_text(
                "unknown metadata key", key_loc
            ) from None
        if field_name in fields:
            raise MalformedField.with_text("repeated metadata clause", clause)
        try:
            fields[field_name] = _parse_value(key, value_loc)
        except UnknownMetadataKey as ex:
            raise ex.in_context(f'bad value for "{key}"') from ex

    return fields, flags


def resolve_metadata(
    location: InputLocation,
    tables: Tables,
    base: InstructionMetadata = DEFAULT_METADATA,
) -> InstructionMetadata:
    """
    Parse a metadata string and merge it over the given base metadata.
    Explicit clauses take precedence; flag effects are merged per bit.
    """
    fields, flags = parse_metadata(location, tables)
    return base.merged(fields, flags)


def resolve_template(tables: Tables) -> InstructionMetadata:
    """Resolve the template metadata that every instruction starts from."""
    location = InputLocation.from_string(tables.template, "<template>")
    try:
        return resolve_metadata(location, tables)
    except BadInput as ex:
        raise ex.in_context("template") from ex


def _parse_value(key: str, location: InputLocation) -> Any:
    text = location.text
    if not text:
        raise UnknownMetadataKey("missing value", location)
    match key:
        case "cpuid":
            return parse_cpuid(location)
        case "level":
            if text not in ("0", "1", "2", "3"):
                raise UnknownMetadataKey.with_text(
                    "privilege level must be 0, 1, 2 or 3", location
                )
            return int(text)
        case "branchType":
            return _parse_enum(BranchType, location)
        case "stackPtr" | "fpuStackPtr":
            return parse_delta(location)
        case "aliasOf" | "vendor":
            if location.match(_re_name) is None:
                raise UnknownMetadataKey.with_text("invalid name", location)
            return text
        case "form":
            return _parse_enum(Form, location)
        case "lock":
            attrs: set[LockAttr] = set()
            for attr_loc in location.split(_re_alternative_sep):
                attr = _parse_enum(LockAttr, attr_loc)
                if attr in attrs:
                    raise UnknownMetadataKey.with_text(
                        "repeated lock attribute", attr_loc
                    )
                attrs.add(attr)
            return frozenset(attrs)
        case _:
            raise AssertionError(key)


def _parse_enum(enum: type[E], location: InputLocation) -> E:
    try:
        return enum(location.text)
    except ValueError:
        expected = ", ".join(member.value for member in enum)
        raise UnknownMetadataKey.with_text(
            f"expected one of {expected}", location
        ) from None


def parse_cpuid(location: InputLocation) -> CpuidRequirement:
    """
    Parse a CPUID requirement expression.

    Alternatives are separated by "|" and the features that must all be
    present by "+". A feature followed by "-" and suffixes is shorthand for
    several features sharing a stem: "avx512f-vl" stands for
    "avx512f+avx512vl".
    """
    alternatives = []
    for alt_loc in location.split(_re_alternative_sep):
        features: set[str] = set()
        for term_loc in alt_loc.split(_re_conjunction_sep):
            features.update(_parse_feature_term(term_loc))
        feature_set = frozenset(features)
        if feature_set in alternatives:
            raise UnknownMetadataKey.with_text("repeated CPUID alternative", alt_loc)
        alternatives.append(feature_set)
    return CpuidRequirement(tuple(alternatives))


def _parse_feature_term(location: InputLocation) -> Iterator[str]:
    first_loc, *suffix_locs = location.split(_re_shorthand_sep)
    for part_loc in (first_loc, *suffix_locs):
        if part_loc.match(_re_feature) is None:
            raise UnknownMetadataKey.with_text("invalid CPUID feature", part_loc)
    first = first_loc.text
    yield first
    if suffix_locs:
        stem = first.rstrip("abcdefghijklmnopqrstuvwxyz_")
        if not stem:
            raise UnknownMetadataKey.with_text(
                "feature shorthand requires a stem ending in a digit", first_loc
            )
        for suffix_loc in suffix_locs:
            yield stem + suffix_loc.text


def parse_delta(location: InputLocation) -> DeltaExpr:
    """
    Parse a stack pointer delta: a sum of terms "N", "os" and "N*os",
    where "os" is the operand size in bytes.
    """
    line = location.line
    pos, end = location.span
    constant = 0
    os_factor = 0
    first = True
    while pos < end:
        match = _re_delta_term.match(line, pos, end)
        if match is None or (match.group(1) is None and not first):
            raise UnknownMetadataKey.with_text(
                "invalid delta expression", location.update_span((pos, end))
            )
        sign = -1 if match.group(1) == "-" else 1
        number = match.group(2)
        if number is None:
            os_factor += sign
        elif match.group(3) is None:
            constant += sign * int(number)
        else:
            os_factor += sign * int(number)
        pos = match.end()
        first = False
    return DeltaExpr(constant, os_factor)


def _parse_flag_effect(
    key_loc: InputLocation, value_loc: InputLocation, tables: Tables
) -> tuple[str, str, FlagEffect]:
    key = key_loc.text
    dot = key.rindex(".")
    reg_loc = key_loc.slice(0, dot)
    bit_loc = key_loc.slice(dot + 1)
    try:
        flag_register = tables.flag_registers[reg_loc.text]
    except KeyError:
        raise UnknownMetadataKey.with_text("unknown flag register", reg_loc) from None
    bit = bit_loc.text
    try:
        flag_register.bit_index(bit)
    except KeyError:
        raise UnknownFlagBit(
            f'flag register "{flag_register.id}" has no bit named "{bit}"', bit_loc
        ) from None
    try:
        effect = FlagEffect(value_loc.text)
    except ValueError:
        expected = "".join(effect.value for effect in FlagEffect)
        raise UnknownMetadataKey.with_text(
            f"flag effect must be one of {expected}", value_loc
        ) from None
    return flag_register.id, bit, effect
