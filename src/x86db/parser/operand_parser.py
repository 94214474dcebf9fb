"""
Parser for the operand list column of an instruction definition.
"""

from __future__ import annotations

import re
from collections.abc import Iterator, Sequence

from ..input import InputLocation, InputMatch, MalformedField, UnknownOperandToken
from ..operand import (
    Access,
    Annotation,
    BroadcastOperand,
    ConstantOperand,
    FarPointerOperand,
    FixedRegisterOperand,
    FixedSize,
    ImmediateOperand,
    ImplicitMemoryOperand,
    MemoryOperand,
    MoffsOperand,
    OperandClass,
    OperandDescriptor,
    PlatformSize,
    RegisterOperand,
    RelativeOperand,
    VectorSize,
    VsibOperand,
    resolve_default_access,
)
from ..tables import Tables
from .tokens import split_field

VECTOR_REGISTER = "vmm"
PLATFORM_REGISTER = "reg"
SIZED_REGISTER = "r"

_re_access = re.compile(r"([RWX]):")
_re_alternative_sep = re.compile("/")
_re_annotation = re.compile(r"\s*\{([^{}]*)\}")
_re_vector_suffix = r"(?:\.(low|[0-9]+))?"

_re_vmm = re.compile(VECTOR_REGISTER + _re_vector_suffix)
_re_vm = re.compile(r"vm" + _re_vector_suffix)
_re_vsib = re.compile(r"vm(32|64)([xyzvl])")
_re_mem = re.compile(r"m([0-9]+)(?:&([0-9]+))?")
_re_far = re.compile(r"(m|ptr)16:(16|32|64)")
_re_broadcast = re.compile(r"b(16|32|64)")
_re_imm = re.compile(r"(p?)imm(8|16|32|64)")
_re_rel = re.compile(r"rel(8|16|32)")
_re_moffs = re.compile(r"moffs(8|16|32|64)")
_re_implicit_mem = re.compile(r"\[(?:([a-z]+):)?(\*?)([a-z][a-z0-9]*)\]")
_re_register = re.compile(r"(\*?)([a-z][a-z0-9]*)")
_re_constant = re.compile(r"[0-9]+")

_vsib_index_sizes = {
    "x": FixedSize(128),
    "y": FixedSize(256),
    "z": FixedSize(512),
    "v": VectorSize(),
    "l": VectorSize(2, True),
}
_vector_divisors = (2, 4, 8)


def parse_operands(
    location: InputLocation, tables: Tables
) -> Iterator[OperandDescriptor]:
    """
    Parse a comma-separated operand list.

    Raises `BadInput` for the first operand that cannot be parsed;
    the message includes the operand's position.
    """
    if not location.strip():
        return
    for index, token in enumerate(split_field(location, ","), 1):
        try:
            yield parse_operand(token, index - 1, tables)
        except (MalformedField, UnknownOperandToken) as ex:
            raise ex.in_context(f"operand {index:d}") from ex


def parse_operand(
    location: InputLocation, index: int, tables: Tables
) -> OperandDescriptor:
    """Parse a single operand token at the given zero-based position."""

    token = location.strip()
    if not token:
        raise MalformedField("empty operand", token)

    # Access mode prefix.
    explicit_access = None
    match = _re_access.match(token.line, *token.span)
    if match is not None:
        explicit_access = Access(match.group(1))
        token = token.slice(match.end() - token.span[0]).strip()
    access = resolve_default_access(explicit_access, index)

    # Annotations.
    body, annotations = _split_annotations(token)

    # Implicit marker.
    implicit = False
    if body.text.startswith("<"):
        if not body.text.endswith(">"):
            raise MalformedField.with_text("text after implicit operand", body)
        implicit = True
        body = body.slice(1, len(body) - 1).strip()
        if not body:
            raise MalformedField("empty implicit operand", body)

    alternatives = _parse_alternatives(body, tables)
    return OperandDescriptor(access, alternatives, implicit, annotations)


def _split_annotations(
    token: InputLocation,
) -> tuple[InputLocation, frozenset[Annotation]]:
    text = token.text
    brace = text.find("{")
    if brace < 0:
        return token, frozenset()

    body = token.slice(0, brace).strip()
    annotations: set[Annotation] = set()
    pos = token.span[0] + brace
    end = token.span[1]
    while pos < end:
        match = _re_annotation.match(token.line, pos, end)
        if match is None:
            raise MalformedField.with_text(
                "malformed operand annotation", token.update_span((pos, end))
            )
        name_location = token.update_span(match.span(1))
        try:
            annotation = Annotation(match.group(1))
        except ValueError:
            raise UnknownOperandToken.with_text(
                "unknown operand annotation", name_location
            ) from None
        if annotation in annotations:
            raise MalformedField.with_text("repeated operand annotation", name_location)
        annotations.add(annotation)
        pos = match.end()
    if {Annotation.MASK, Annotation.MASK_ZERO} <= annotations:
        raise MalformedField.with_text("conflicting masking annotations", token)
    if {Annotation.ROUNDING, Annotation.SAE} <= annotations:
        raise MalformedField.with_text("conflicting rounding annotations", token)
    return body, frozenset(annotations)


def _parse_alternatives(
    body: InputLocation, tables: Tables
) -> tuple[OperandClass, ...]:
    parts = [part.strip() for part in body.split(_re_alternative_sep)]
    alternatives: list[OperandClass | None] = []
    sized_register_locations = []
    for part in parts:
        if not part:
            raise MalformedField.with_text("empty operand alternative", body)
        if part.text == SIZED_REGISTER:
            # Size is determined by a memory alternative.
            alternatives.append(None)
            sized_register_locations.append(part)
        else:
            alternatives.append(parse_operand_class(part, tables))

    if sized_register_locations:
        register = _sized_register(alternatives, tables)
        if register is None:
            raise UnknownOperandToken.with_text(
                "register size cannot be derived from the alternatives",
                sized_register_locations[0],
            )
        alternatives = [register if alt is None else alt for alt in alternatives]

    resolved = tuple(alt for alt in alternatives if alt is not None)
    if len(set(resolved)) != len(resolved):
        raise MalformedField.with_text("repeated operand alternative", body)
    return resolved


def _sized_register(
    alternatives: Sequence[OperandClass | None], tables: Tables
) -> RegisterOperand | None:
    for alt in alternatives:
        if isinstance(alt, MemoryOperand) and isinstance(alt.size, FixedSize):
            reg_class = tables.register_classes.get(f"r{alt.size.bits:d}")
            if reg_class is not None:
                return RegisterOperand(reg_class.id, FixedSize(alt.size.bits))
    return None


def _vector_size(suffix: str | None, location: InputLocation) -> VectorSize:
    if suffix is None:
        return VectorSize()
    elif suffix == "low":
        return VectorSize(2, True)
    else:
        divisor = int(suffix)
        if divisor not in _vector_divisors:
            raise UnknownOperandToken.with_text(
                "vector length divisor must be 2, 4 or 8", location
            )
        return VectorSize(divisor)


def parse_operand_class(location: InputLocation, tables: Tables) -> OperandClass:
    """
    Parse one alternative of an operand.

    Raises `UnknownOperandToken` if the text matches no operand vocabulary entry.
    """
    text = location.text

    # Register classes, which take precedence over register names.
    reg_class = tables.register_classes.get(text)
    if reg_class is not None:
        width = reg_class.width
        return RegisterOperand(
            reg_class.id, PlatformSize() if width is None else FixedSize(width)
        )
    if text == PLATFORM_REGISTER:
        return RegisterOperand(PLATFORM_REGISTER, PlatformSize())
    if (match := location.match(_re_vmm)) is not None:
        suffix = match.group(1).text if match.has_group(1) else None
        return RegisterOperand(VECTOR_REGISTER, _vector_size(suffix, location))

    # Memory.
    if text == "mem":
        return MemoryOperand(None)
    if (match := location.match(_re_mem)) is not None:
        bits = int(match.group(1).text)
        second = int(match.group(2).text) if match.has_group(2) else None
        for size in (bits, second):
            if size is not None and (size <= 0 or size % 8 != 0):
                raise UnknownOperandToken.with_text(
                    "memory size must be a multiple of 8 bits", location
                )
        return MemoryOperand(FixedSize(bits), second)
    if (match := location.match(_re_vm)) is not None:
        suffix = match.group(1).text if match.has_group(1) else None
        return MemoryOperand(_vector_size(suffix, location))
    if (match := location.match(_re_vsib)) is not None:
        return VsibOperand(
            int(match.group(1).text), _vsib_index_sizes[match.group(2).text]
        )
    if (match := location.match(_re_far)) is not None:
        return FarPointerOperand(int(match.group(2).text), match.group(1).text == "m")
    if (match := location.match(_re_broadcast)) is not None:
        return BroadcastOperand(int(match.group(1).text))
    if (match := location.match(_re_moffs)) is not None:
        return MoffsOperand(int(match.group(1).text))
    if (match := location.match(_re_implicit_mem)) is not None:
        return _parse_implicit_memory(match, tables)

    # Immediates and branch targets.
    if (match := location.match(_re_imm)) is not None:
        return ImmediateOperand(int(match.group(2).text), not match.group(1).text)
    if (match := location.match(_re_rel)) is not None:
        return RelativeOperand(int(match.group(1).text))
    if location.match(_re_constant) is not None:
        return ConstantOperand(int(text))

    # Specific registers.
    if (match := location.match(_re_register)) is not None:
        family = bool(match.group(1).text)
        name = match.group(2).text
        if _is_register(name, family, tables):
            return FixedRegisterOperand(name, family)

    raise UnknownOperandToken.with_text("unknown operand token", location)


def _is_register(name: str, family: bool, tables: Tables) -> bool:
    if family:
        return name in tables.register_families
    else:
        return name in tables.register_by_name


def _parse_implicit_memory(match: InputMatch, tables: Tables) -> ImplicitMemoryOperand:
    segment = None
    if match.has_group(1):
        segment_location = match.group(1)
        segment = segment_location.text
        if segment not in tables.register_by_name:
            raise UnknownOperandToken.with_text(
                "unknown segment register", segment_location
            )
    family = bool(match.group(2).text)
    base_location = match.group(3)
    base = base_location.text
    if not _is_register(base, family, tables):
        raise UnknownOperandToken.with_text("unknown base register", base_location)
    return ImplicitMemoryOperand(segment, base, family)
