from __future__ import annotations

from collections.abc import Sequence

import pytest

from x86db.environment import Environment
from x86db.input import (
    BadInput,
    DanglingAlias,
    DelayedError,
    DuplicateDefinition,
    ErrorCollector,
    InconsistentEncoding,
    InputLocation,
    InvalidOpcodeGrammar,
    MalformedField,
    UnknownFlagBit,
    UnknownOperandToken,
)
from x86db.instruction import RawInstruction
from x86db.metadata import FlagEffect, Form, LockAttr
from x86db.opcode import OpcodeMap, TupleType
from x86db.operand import Access, Annotation
from x86db.parser.builder import build_environment, resolve_instruction
from x86db.tables import Tables

type Fields = tuple[str, str, str, str]


def raw(*fields: str) -> RawInstruction:
    return RawInstruction.from_strings(*fields)


def build(
    tables: Tables, *definitions: Fields, max_workers: int | None = 1
) -> Environment:
    return build_environment(
        "test",
        "1",
        tables,
        (raw(*fields) for fields in definitions),
        max_workers=max_workers,
    )


def build_errors(tables: Tables, *definitions: Fields) -> Sequence[BadInput]:
    with pytest.raises(DelayedError) as excinfo:
        build(tables, *definitions)
    return excinfo.value.exceptions


ADD: Fields = ("add", "r/m8, r8", "mr: 00 /r", "_lockarith")
VADDPD: Fields = (
    "vaddpd",
    "W:vmm {kz}, vmm, vmm/vm/b64 {er}",
    "rvm:fv: evex.nds.vl.66.0f.w1 58 /r",
    "cpuid=avx512f-vl",
)


def test_add(tables: Tables) -> None:
    """A legacy instruction with a lockable memory destination."""
    env = build(tables, ADD)
    (instr,) = env.by_mnemonic("add")
    assert instr.operands[0].access is Access.READ_WRITE
    assert instr.operands[0].is_memory
    assert instr.encoding.opcode == (0x00,)
    assert instr.metadata.lock == frozenset(
        (LockAttr.LEGACY, LockAttr.HARDWARE, LockAttr.EXPLICIT)
    )
    assert instr.flag_effect("eflags", "of") is FlagEffect.MODIFY
    assert instr.flag_effect("eflags", "cf") is FlagEffect.MODIFY
    assert instr.architectures == frozenset(("x86", "x64"))
    assert env.by_opcode("x86", OpcodeMap.ONE_BYTE, 0x00) == (instr,)
    assert env.by_opcode("x64", OpcodeMap.ONE_BYTE, 0x00) == (instr,)


def test_vaddpd(tables: Tables) -> None:
    """An EVEX instruction with masking, broadcast and embedded rounding."""
    env = build(tables, VADDPD)
    (instr,) = env.by_mnemonic("vaddpd")
    assert instr.operands[0].annotations == frozenset((Annotation.MASK_ZERO,))
    assert instr.is_masked
    assert instr.operands[2].broadcast_size == 64
    assert instr.supports_rounding and instr.supports_sae
    assert instr.encoding.tuple_type is TupleType.FV
    assert instr.metadata.cpuid.features == frozenset(("avx512f", "avx512vl"))
    assert env.by_feature("avx512vl") == (instr,)
    assert env.by_opcode("x64", OpcodeMap.MAP_0F, 0x58) == (instr,)


def test_register_addend_index(tables: Tables) -> None:
    """An opcode with a register addend is found under all eight bytes."""
    env = build(tables, ("bswap", "r32", "o: 0f c8 +rd", ""))
    (instr,) = env.instructions
    for byte in range(0xC8, 0xD0):
        assert env.by_opcode("x86", OpcodeMap.MAP_0F, byte) == (instr,)
    assert env.by_opcode("x86", OpcodeMap.MAP_0F, 0xD0) == ()


def test_dangling_alias(tables: Tables) -> None:
    """An alias must name a mnemonic defined in the same instruction set."""
    (error,) = build_errors(
        tables,
        ("jz", "rel8", "d: 74 ob", ""),
        ("je", "rel8", "d: 74 ob", "aliasOf=jzz"),
    )
    assert isinstance(error, DanglingAlias)
    assert str(error) == 'je: alias target "jzz" does not exist'


def test_self_alias(tables: Tables) -> None:
    """An instruction cannot be an alias of its own mnemonic."""
    (error,) = build_errors(tables, ("jz", "rel8", "d: 74 ob", "aliasOf=jz"))
    assert isinstance(error, DanglingAlias)
    assert str(error) == "jz: instruction cannot be an alias of itself"


def test_alias(tables: Tables) -> None:
    """Aliases may refer to mnemonics that are defined later."""
    env = build(
        tables,
        ("je", "rel8", "d: 74 ob", "aliasOf=jz"),
        ("jz", "rel8", "d: 74 ob", ""),
    )
    assert env.by_mnemonic("je")[0].metadata.alias_of == "jz"
    assert len(env.by_opcode("x86", OpcodeMap.ONE_BYTE, 0x74)) == 2


def test_forms(tables: Tables) -> None:
    """A preferred and an alternative form can share operands."""
    env = build(
        tables,
        ("mov", "W:r8, r8", "mr: 88 /r", "form=preferred"),
        ("mov", "W:r8, r8", "rm: 8a /r", "form=alternative"),
    )
    assert [instr.metadata.form for instr in env] == [
        Form.PREFERRED,
        Form.ALTERNATIVE,
    ]


def test_duplicate_forms(tables: Tables) -> None:
    """
    Two preferred forms of the same instruction are duplicates.
    Each duplicate is reported once, for its first shared architecture.
    """
    (error,) = build_errors(
        tables,
        ("mov", "W:r8, r8", "mr: 88 /r", "form=preferred"),
        ("mov", "W:r8, r8", "rm: 8a /r", "form=preferred"),
    )
    assert isinstance(error, DuplicateDefinition)
    assert str(error) == 'duplicate definition of "mov W:r8, r8" on x64'


def test_untagged_duplicate(tables: Tables) -> None:
    """Duplicates are detected per architecture."""
    (error,) = build_errors(
        tables,
        ("inc", "r32", "x86:o: 40 +rd", ""),
        ("inc", "r32", "m: ff /0", ""),
    )
    assert isinstance(error, DuplicateDefinition)
    assert str(error) == 'duplicate definition of "inc r32" on x86'
    assert len(error.locations) == 2


def test_alternative_without_preferred(tables: Tables) -> None:
    """An alternative form needs a preferred form to be the alternative to."""
    (error,) = build_errors(
        tables, ("mov", "W:r8, r8", "x86:rm: 8a /r", "form=alternative")
    )
    assert isinstance(error, InconsistentEncoding)
    assert "no preferred form" in str(error)


def test_evex_memory_without_tuple(tables: Tables) -> None:
    """EVEX memory operands need a tuple type to scale their displacement."""
    (error,) = build_errors(
        tables,
        ("vaddpd", "W:vmm, vmm, vmm/vm", "rvm: evex.nds.vl.66.0f.w1 58 /r", ""),
    )
    assert isinstance(error, InconsistentEncoding)
    assert str(error) == (
        "vaddpd: EVEX encoding with a memory operand requires a tuple type"
    )


@pytest.mark.parametrize(
    "fields, message",
    [
        (("add", "r8, r8", "m: 00 /r", ""), r'encoding "m" has 1 letters'),
        (("add", "r8, r8", "mr: 00", ""), r'"r" requires "/r"'),
        (("add", "imm8, r8", "mr: 00 /r", ""), r"operand must be a register or"),
        (("inc", "r32", "o: 40", ""), r'"o" requires a register addend'),
        (("inc", "r32", "m: 40 +rd", ""), r'register addend requires operand'),
        (("vaddps", "vmm, vmm", "rm: vex.nds.vl.0f 58 /r", ""), r'"nds" requires'),
        (("vaddps", "vmm, vmm, vmm", "rvm: vex.vl.0f 58 /r", ""), r'"v" requires'),
        (("push", "imm8", "i: 6a", ""), r"no immediate placeholder"),
        (("jmp", "rel8", "d: eb", ""), r"no offset placeholder"),
        (("xchg", "r8, r8", "rm: 86 /r", "_lock"), r"require a memory destination"),
        (("vaddps", "vmm {k}, vmm", "rm: vex.vl.0f 58 /r", ""), r"requires an EVEX"),
        (("nop", "r32", "90", ""), r"operand 1 is not implicit"),
        (("add", "<al>, imm8", "ri: 04 ib", ""), r'implicit operand must use "x"'),
        (("mov", "W:r64, r64", "x86:mr: 89 /r", ""), r"only available in 64-bit"),
        (("mov", "W:r32, r32", "x86:mr: rex 89 /r", ""), r"REX prefix is only"),
        (("mov", "W:r64, r64", "mr: 89 /r", ""), r'"r64" is only available'),
        (("add", "r64/m64, r64", "mr: rex.w 01 /r", ""), r"REX prefix is only"),
        (("push", "imm32", "i: os64 68 id", ""), r'"os64" is only available'),
        (("mov", "W:r8x, r8x", "mr: 88 /r", ""), r'"r8x" is only available'),
        (("kmovw", "k, k", "rm:t1s: evex.128.0f.w0 90 /r", ""), r"without a memory"),
    ],
)
def test_inconsistent(tables: Tables, fields: Fields, message: str) -> None:
    instr, errors = resolve_instruction(raw(*fields), tables)
    assert instr is not None
    assert errors
    assert all(isinstance(error, InconsistentEncoding) for error in errors)
    assert any(message in str(error) for error in errors), [
        str(error) for error in errors
    ]


def test_field_errors_collected(tables: Tables) -> None:
    """Every field is resolved, so all field errors are reported at once."""
    instr, errors = resolve_instruction(
        raw("Add", "r8, qq", "mr: 00 zz", "eflags.zz=M"), tables
    )
    assert instr is None
    assert [type(error) for error in errors] == [
        MalformedField,
        UnknownOperandToken,
        InvalidOpcodeGrammar,
        UnknownFlagBit,
    ]
    assert str(errors[1]).startswith("Add: operand 2: ")


def test_errors_in_input_order(tables: Tables) -> None:
    """Errors are reported in input order, also when resolving in parallel."""
    definitions = [
        (f"op{i:d}", "r8", "m: fe /r", "eflags.zz=M" if i % 3 else "")
        for i in range(30)
    ]
    collector = ErrorCollector()
    with pytest.raises(DelayedError) as excinfo:
        build_environment(
            "test",
            "1",
            tables,
            (raw(*fields) for fields in definitions),
            collector=collector,
            max_workers=4,
        )
    mnemonics = [str(error).split(":")[0] for error in excinfo.value.exceptions]
    assert mnemonics == [f"op{i:d}" for i in range(30) if i % 3]
    assert list(collector.errors) == list(excinfo.value.exceptions)


def test_normalization_idempotent(tables: Tables) -> None:
    """Formatting instructions and building again gives equal instructions."""
    env = build(
        tables,
        ADD,
        VADDPD,
        ("movsb", "W:<[es:*di]>, <[ds:*si]>", "a4", "rep eflags.df=T"),
        ("push", "R:imm8", "i: 6a ib", "stackPtr=-os"),
        ("mov", "W:r64, imm64", "x64:oi: rex.w b8 +rq iq", ""),
    )
    lines = [env.format_instruction(instr) for instr in env]
    rebuilt = build_environment(
        "test",
        "1",
        tables,
        (
            RawInstruction.from_location(InputLocation.from_string(line))
            for line in lines
        ),
    )
    assert list(rebuilt) == list(env)
    assert [rebuilt.format_instruction(instr) for instr in rebuilt] == lines


def test_add_explicit_flags(tables: Tables) -> None:
    """Flag bits without a clause have no effect recorded."""
    env = build(
        tables,
        (
            "add",
            "r/m8, r8",
            "mr: 00 /r",
            "lock=legacy|hardware|explicit eflags.of=M eflags.cf=M",
        ),
    )
    (instr,) = env
    assert instr.flag_effect("eflags", "of") is FlagEffect.MODIFY
    assert instr.flag_effect("eflags", "cf") is FlagEffect.MODIFY
    assert instr.flag_effect("eflags", "zf") is None
    assert instr.encoding.operand_encoding == "mr"


def test_third_form(tables: Tables) -> None:
    """A third encoding without a new form is a duplicate."""
    (error,) = build_errors(
        tables,
        ("mov", "W:r8, r8", "x86:mr: 88 /r", "form=preferred"),
        ("mov", "W:r8, r8", "x86:rm: 8a /r", "form=alternative"),
        ("mov", "W:r8, r8", "x86:rm: 8a /r", ""),
    )
    assert isinstance(error, DuplicateDefinition)
    assert error.locations[0].text == "mov"
