"""
Parser for the opcode encoding column of an instruction definition.

The column has the form "arch:openc:tuple: opcode", where the leading
positions are optional and identified by their vocabulary:

- arch: "x86" or "x64"; when absent, the encoding is valid on both
- openc: one letter per operand, naming the field that encodes it
- tuple: the EVEX memory tuple type

The opcode text consists of encoding environment qualifiers, at most one
prefix keyword with dot-separated fields, literal opcode bytes, a register
addend, a ModRM marker and immediate placeholders.
"""

from __future__ import annotations

import re
from collections.abc import Set

from ..input import InputLocation, InvalidOpcodeGrammar
from ..opcode import (
    DrexPrefix,
    EvexPrefix,
    LegacyPrefix,
    MandatoryPrefix,
    OpcodeEncoding,
    OpcodeMap,
    Placeholder,
    Prefix,
    RegisterAddend,
    RexPrefix,
    TupleType,
    VectorLength,
    VexPrefix,
    VlRestriction,
    VvvvRole,
    WBit,
    XopPrefix,
)
from ..utils import bad_type
from .tokens import TokenEnum, Tokenizer, split_field

OPERAND_ENCODING_LETTERS = "xrmvido"

_re_operand_encoding = re.compile(f"[{OPERAND_ENCODING_LETTERS}]+")
_re_prefix_sep = re.compile(r"\.")

_length_aliases = {
    "l0": VectorLength.L128,
    "lz": VectorLength.L128,
    "l1": VectorLength.L256,
}
_vvvv_fields = {role.value for role in VvvvRole}
_length_fields = {length.value for length in VectorLength} | set(_length_aliases)
_mandatory_fields = {prefix.value for prefix in MandatoryPrefix}
_map_fields = {m.value for m in OpcodeMap if m is not OpcodeMap.ONE_BYTE}
_w_fields = {w.value for w in WBit}
_restriction_fields = {restriction.value for restriction in VlRestriction}
_vex_maps = (OpcodeMap.MAP_0F, OpcodeMap.MAP_0F38, OpcodeMap.MAP_0F3A)


class OpcodeToken(TokenEnum):
    prefix = r"(?:evex|vex|xop|drex|rex)(?:\.[0-9a-z_]+)*\b"
    qualifier = r"(?:os|as)(?:16|32|64)\b"
    modrm = r"/[r0-7]\b"
    addend = r"\+(?:r[bwdq]?|i)\b"
    placeholder = r"(?:i[bwdq]|o[bwd]|m[bwdq]|is4)\b"
    byte = r"[0-9A-Fa-f]{2}\b"
    other = r"\S+"


class OpcodeTokenizer(Tokenizer[OpcodeToken]):
    pass


def parse_encoding(location: InputLocation, arch_ids: Set[str]) -> OpcodeEncoding:
    """
    Parse an opcode encoding string.

    Raises `InvalidOpcodeGrammar` if the string does not follow the grammar,
    or `MalformedField` if its brackets are unbalanced.
    """

    *positions, opcode_loc = split_field(location, ":")
    if len(positions) > 3:
        raise InvalidOpcodeGrammar.with_text(
            f"too many positions: expected at most 4, got {len(positions) + 1:d}",
            location,
        )

    # Identify the leading positions by their vocabulary.
    archs = frozenset(arch_ids)
    operand_encoding = ""
    tuple_type: TupleType | None = None
    tuple_loc = None
    remaining = list(positions)
    if remaining and remaining[0].text in arch_ids:
        archs = frozenset((remaining.pop(0).text,))
    if remaining and remaining[0].match(_re_operand_encoding) is not None:
        operand_encoding = remaining.pop(0).text
    if remaining:
        try:
            tuple_type = TupleType(remaining[0].text)
        except ValueError:
            pass
        else:
            tuple_loc = remaining.pop(0)
            if not operand_encoding:
                raise InvalidOpcodeGrammar.with_text(
                    "tuple type requires an operand encoding", tuple_loc
                )
    if remaining:
        raise InvalidOpcodeGrammar.with_text(
            "unknown architecture, operand encoding or tuple type", remaining[0]
        )

    return _parse_opcode_text(
        opcode_loc, archs, operand_encoding, tuple_type, tuple_loc
    )


def _parse_opcode_text(
    location: InputLocation,
    archs: frozenset[str],
    operand_encoding: str,
    tuple_type: TupleType | None,
    tuple_loc: InputLocation | None,
) -> OpcodeEncoding:
    tokens = OpcodeTokenizer.scan(location)

    operand_size = None
    address_size = None
    while (qualifier_loc := tokens.eat(OpcodeToken.qualifier)) is not None:
        text = qualifier_loc.text
        size = int(text[2:])
        if text.startswith("os"):
            if operand_size is not None:
                raise InvalidOpcodeGrammar.with_text(
                    "repeated operand size qualifier", qualifier_loc
                )
            operand_size = size
        else:
            if address_size is not None:
                raise InvalidOpcodeGrammar.with_text(
                    "repeated address size qualifier", qualifier_loc
                )
            address_size = size

    prefix: Prefix = LegacyPrefix()
    vl_restriction = None
    prefix_loc = tokens.eat(OpcodeToken.prefix)
    if prefix_loc is not None:
        prefix, vl_restriction = parse_prefix(prefix_loc, tuple_type)

    opcode: list[int] = []
    while (byte_loc := tokens.eat(OpcodeToken.byte)) is not None:
        opcode.append(int(byte_loc.text, 16))
    if not opcode:
        if tokens.end:
            raise InvalidOpcodeGrammar.with_text("no opcode bytes", location)
        raise _misplaced_token(tokens, prefix_loc)

    addend_loc = tokens.eat(OpcodeToken.addend)
    register_addend = None if addend_loc is None else RegisterAddend(addend_loc.text)

    modrm = tokens.peek(OpcodeToken.modrm)
    opcode_extension = None
    if (modrm_loc := tokens.eat(OpcodeToken.modrm)) is not None:
        if modrm_loc.text != "/r":
            opcode_extension = int(modrm_loc.text[1:])

    placeholders: list[Placeholder] = []
    while (placeholder_loc := tokens.eat(OpcodeToken.placeholder)) is not None:
        placeholders.append(Placeholder(placeholder_loc.text))

    if not tokens.end:
        raise _misplaced_token(tokens, prefix_loc)

    if tuple_type is not None and not isinstance(prefix, EvexPrefix):
        raise InvalidOpcodeGrammar.with_text(
            "tuple type is only allowed with an EVEX prefix", tuple_loc
        )

    return OpcodeEncoding(
        architectures=archs,
        operand_encoding=operand_encoding,
        prefix=prefix,
        opcode=tuple(opcode),
        modrm=modrm,
        opcode_extension=opcode_extension,
        register_addend=register_addend,
        placeholders=tuple(placeholders),
        operand_size=operand_size,
        address_size=address_size,
        vl_restriction=vl_restriction,
    )


def _misplaced_token(
    tokens: OpcodeTokenizer, prefix_loc: InputLocation | None
) -> InvalidOpcodeGrammar:
    """Return an error for a token that is not allowed at the current position."""
    match tokens.kind:
        case OpcodeToken.qualifier:
            msg = "qualifier must precede the prefix keyword and the opcode"
        case OpcodeToken.prefix:
            if prefix_loc is None:
                msg = "prefix keyword must precede the opcode"
            else:
                msg = "only one prefix keyword allowed"
        case OpcodeToken.byte:
            msg = "opcode byte after ModRM, addend or immediate"
        case OpcodeToken.addend:
            msg = "register addend must follow the last opcode byte"
        case OpcodeToken.modrm:
            msg = "ModRM marker must follow the opcode bytes"
        case OpcodeToken.placeholder:
            msg = "immediate placeholder before the opcode"
        case OpcodeToken.other:
            msg = "invalid token"
        case kind:
            bad_type(kind)
    return InvalidOpcodeGrammar.with_text(msg, tokens.location)


def parse_prefix(
    location: InputLocation, tuple_type: TupleType | None = None
) -> tuple[Prefix, VlRestriction | None]:
    """
    Parse a prefix keyword with its dot-separated fields.

    Returns the prefix and the vector length restriction, if any.
    """
    keyword_loc, *field_locs = location.split(_re_prefix_sep)
    keyword = keyword_loc.text

    if keyword == "rex":
        if not field_locs:
            return RexPrefix(False), None
        if len(field_locs) == 1 and field_locs[0].text == "w":
            return RexPrefix(True), None
        raise InvalidOpcodeGrammar.with_text('REX prefix field must be "w"', location)

    if keyword == "drex":
        if len(field_locs) == 1 and field_locs[0].text in ("oc0", "oc1"):
            return DrexPrefix(int(field_locs[0].text[2:])), None
        raise InvalidOpcodeGrammar.with_text(
            'DREX prefix requires an "oc0" or "oc1" field', location
        )

    vvvv = None
    length = None
    mandatory = None
    opcode_map = None
    w = None
    vl_restriction = None

    def check_unset(value: object, field_loc: InputLocation, what: str) -> None:
        if value is not None:
            raise InvalidOpcodeGrammar.with_text(f"repeated {what} field", field_loc)

    for field_loc in field_locs:
        text = field_loc.text
        if text in _vvvv_fields:
            check_unset(vvvv, field_loc, "vvvv")
            vvvv = VvvvRole(text)
        elif text in _length_fields:
            check_unset(length, field_loc, "vector length")
            length = _length_aliases.get(text) or VectorLength(text)
        elif text in _mandatory_fields:
            check_unset(mandatory, field_loc, "mandatory prefix")
            mandatory = MandatoryPrefix(text)
        elif text in _map_fields:
            check_unset(opcode_map, field_loc, "opcode map")
            opcode_map = OpcodeMap(text)
        elif text in _w_fields:
            check_unset(w, field_loc, "W")
            w = WBit(text)
        elif text in _restriction_fields:
            check_unset(vl_restriction, field_loc, "vector length restriction")
            vl_restriction = VlRestriction(text)
        else:
            raise InvalidOpcodeGrammar.with_text(
                f"unknown {keyword.upper()} prefix field", field_loc
            )

    if opcode_map is None:
        raise InvalidOpcodeGrammar.with_text(
            f"{keyword.upper()} prefix requires an opcode map", location
        )
    if length is None:
        length = VectorLength.IGNORED
    if w is None:
        w = WBit.IGNORED
    if vl_restriction is not None and length is not VectorLength.VARIABLE:
        raise InvalidOpcodeGrammar.with_text(
            "vector length restriction requires a variable vector length", location
        )

    if keyword == "xop":
        if not opcode_map.is_xop:
            raise InvalidOpcodeGrammar.with_text(
                "XOP prefix requires map8, map9 or mapa", location
            )
        if mandatory is not None:
            raise InvalidOpcodeGrammar.with_text(
                "XOP prefix cannot have a mandatory prefix", location
            )
        return XopPrefix(vvvv, length, opcode_map, w), vl_restriction

    if opcode_map not in _vex_maps:
        raise InvalidOpcodeGrammar.with_text(
            f"{keyword.upper()} prefix requires map 0f, 0f38 or 0f3a", location
        )
    if mandatory is None:
        mandatory = MandatoryPrefix.NONE
    if keyword == "vex":
        if length is VectorLength.L512:
            raise InvalidOpcodeGrammar.with_text(
                "VEX prefix cannot encode 512-bit vectors", location
            )
        return VexPrefix(vvvv, length, mandatory, opcode_map, w), vl_restriction
    else:
        assert keyword == "evex", keyword
        prefix = EvexPrefix(vvvv, length, mandatory, opcode_map, w, tuple_type)
        return prefix, vl_restriction
