from __future__ import annotations

import pytest

from x86db.input import InputLocation, InvalidOpcodeGrammar
from x86db.opcode import (
    DrexPrefix,
    EvexPrefix,
    LegacyPrefix,
    MandatoryPrefix,
    OpcodeEncoding,
    OpcodeMap,
    Placeholder,
    PlaceholderKind,
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
from x86db.parser.opcode_parser import parse_encoding

ARCHS = frozenset(("x86", "x64"))


def parse(text: str) -> OpcodeEncoding:
    return parse_encoding(InputLocation.from_string(text), ARCHS)


def test_legacy_modrm() -> None:
    encoding = parse("mr: 00 /r")
    assert encoding.architectures == ARCHS
    assert encoding.operand_encoding == "mr"
    assert encoding.prefix == LegacyPrefix()
    assert encoding.opcode == (0x00,)
    assert encoding.modrm and encoding.opcode_extension is None
    assert encoding.opcode_map is OpcodeMap.ONE_BYTE
    assert encoding.mandatory_prefix is MandatoryPrefix.NONE
    assert encoding.primary_opcode == 0x00
    assert str(encoding) == "mr: 00 /r"


def test_legacy_escape_bytes() -> None:
    """Mandatory prefix and escape bytes select the map of legacy encodings."""
    encoding = parse("rm: 66 0f 38 f6 /r")
    assert encoding.mandatory_prefix is MandatoryPrefix.P66
    assert encoding.opcode_map is OpcodeMap.MAP_0F38
    assert encoding.primary_opcode == 0xF6
    assert encoding.opcode_tail == (0xF6,)


def test_opcode_extension_and_immediate() -> None:
    encoding = parse("mi: 80 /0 ib")
    assert encoding.modrm
    assert encoding.opcode_extension == 0
    assert encoding.placeholders == (Placeholder.IB,)
    assert encoding.has_placeholder(PlaceholderKind.IMMEDIATE)
    assert not encoding.has_placeholder(PlaceholderKind.OFFSET)


def test_architecture_and_addend() -> None:
    encoding = parse("x64:oi: rex.w b8 +rq iq")
    assert encoding.architectures == frozenset(("x64",))
    assert encoding.prefix == RexPrefix(True)
    assert encoding.register_addend is RegisterAddend.QWORD
    assert encoding.placeholders == (Placeholder.IQ,)
    assert str(encoding) == "x64:oi: rex.w b8 +rq iq"


def test_architecture_only() -> None:
    encoding = parse("x64: 0f 05")
    assert encoding.architectures == frozenset(("x64",))
    assert encoding.operand_encoding == ""
    assert encoding.opcode_map is OpcodeMap.MAP_0F


def test_format_single_architecture_set() -> None:
    """
    In an instruction set with only one architecture, unrestricted encodings
    are formatted without an architecture position.
    """
    archs = frozenset(("x86",))
    encoding = parse_encoding(InputLocation.from_string("mr: 00 /r"), archs)
    assert encoding.architectures == archs
    assert encoding.format(archs) == "mr: 00 /r"
    assert parse_encoding(
        InputLocation.from_string(encoding.format(archs)), archs
    ) == encoding


def test_format_restricted_architecture() -> None:
    encoding = parse("x64:oi: rex.w b8 +rq iq")
    assert encoding.format(ARCHS) == "x64:oi: rex.w b8 +rq iq"
    assert parse("oi: b8 +rd id").format(ARCHS) == "oi: b8 +rd id"


def test_qualifiers() -> None:
    encoding = parse("os32 as16 ab")
    assert encoding.operand_size == 32
    assert encoding.address_size == 16
    assert str(encoding) == "os32 as16 ab"


def test_evex() -> None:
    encoding = parse("rvm:fv: evex.nds.vl.66.0f.w1 58 /r")
    assert encoding.prefix == EvexPrefix(
        VvvvRole.NDS,
        VectorLength.VARIABLE,
        MandatoryPrefix.P66,
        OpcodeMap.MAP_0F,
        WBit.W1,
        TupleType.FV,
    )
    assert encoding.is_evex
    assert encoding.tuple_type is TupleType.FV
    assert encoding.vvvv is VvvvRole.NDS
    assert encoding.vector_length is VectorLength.VARIABLE
    assert encoding.mandatory_prefix is MandatoryPrefix.P66
    assert encoding.primary_opcode == 0x58
    assert str(encoding) == "rvm:fv: evex.nds.vl.66.0f.w1 58 /r"


def test_vex_aliases_and_defaults() -> None:
    """L0 and LZ are aliases for 128-bit vectors; W and L default to ignored."""
    encoding = parse("rvm: vex.nds.lz.0f38 f2 /r")
    assert encoding.prefix == VexPrefix(
        VvvvRole.NDS,
        VectorLength.L128,
        MandatoryPrefix.NONE,
        OpcodeMap.MAP_0F38,
        WBit.IGNORED,
    )
    assert str(encoding) == "rvm: vex.nds.128.0f38.wig f2 /r"


def test_xop_and_drex() -> None:
    xop = parse("rmv: xop.nds.128.map9.w0 90 /r")
    assert xop.prefix == XopPrefix(
        VvvvRole.NDS, VectorLength.L128, OpcodeMap.XOP9, WBit.W0
    )
    assert xop.opcode_map is OpcodeMap.XOP9
    drex = parse("rm: drex.oc1 0f 25 /r")
    assert drex.prefix == DrexPrefix(1)
    assert drex.opcode_map is OpcodeMap.MAP_0F


def test_vl_restriction() -> None:
    encoding = parse("rm:fvm: evex.vl.66.0f.w1.vx 6f /r")
    assert encoding.vl_restriction is VlRestriction.NO_512
    assert str(encoding) == "rm:fvm: evex.vl.66.0f.w1.vx 6f /r"
    with pytest.raises(InvalidOpcodeGrammar, match=r"requires a variable vector"):
        parse("rm:fvm: evex.512.66.0f.w1.vx 6f /r")


def test_register_in_immediate() -> None:
    encoding = parse("rvmi: xop.nds.vl.map8.w0 a2 /r is4")
    assert encoding.has_placeholder(PlaceholderKind.REGISTER_IN_IMMEDIATE)


@pytest.mark.parametrize(
    "text, message",
    [
        ("mr: /r", r"ModRM marker must follow the opcode bytes"),
        ("mr: 00 /r 01", r"opcode byte after ModRM"),
        ("o: +rd 40", r"register addend must follow the last opcode byte"),
        ("x86: 00 zz", r'invalid token: "zz"'),
        ("x65:mr: 00 /r", r"unknown architecture, operand encoding or tuple type"),
        ("rm:fv: 0f 10 /r", r"tuple type is only allowed with an EVEX prefix"),
        ("fv: evex.512.0f.w0 10", r"tuple type requires an operand encoding"),
        ("vex.512.0f.w0 77", r"VEX prefix cannot encode 512-bit vectors"),
        ("vex.128.w0 77", r"VEX prefix requires an opcode map"),
        ("xop.128.0f.w0 77", r"XOP prefix requires map8, map9 or mapa"),
        ("vex.128.0f.w0.w1 77", r"repeated W field"),
        ("vex.128.0f.qq 77", r'unknown VEX prefix field: "qq"'),
        ("rex.x 40", r'REX prefix field must be "w"'),
        ("rex vex.128.0f.w0 77", r"only one prefix keyword allowed"),
        ("77 vex.128.0f.w0", r"prefix keyword must precede the opcode"),
        ("os32 rex os16 00", r"qualifier must precede the prefix keyword"),
        ("os32 os16 00", r"repeated operand size qualifier"),
        ("i: ib 6a", r"immediate placeholder before the opcode"),
        ("", r"no opcode bytes"),
        ("a:b:c:d: 00", r"too many positions"),
    ],
)
def test_grammar_errors(text: str, message: str) -> None:
    with pytest.raises(InvalidOpcodeGrammar, match=message):
        parse(text)
