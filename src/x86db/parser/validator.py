"""
Consistency checks on resolved instructions.

The checks on a single instruction compare its operands, its encoding and
its metadata with each other. The checks on the instruction set as a whole
look for alias targets that do not exist and for instructions that are
defined more than once.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterator, Sequence

from ..input import (
    BadInput,
    DanglingAlias,
    DuplicateDefinition,
    InconsistentEncoding,
    InputLocation,
)
from ..instruction import Instruction
from ..metadata import Form
from ..opcode import OpcodeEncoding, PlaceholderKind, RexPrefix
from ..operand import (
    Annotation,
    BroadcastOperand,
    FarPointerOperand,
    FixedRegisterOperand,
    ImmediateOperand,
    MemoryOperand,
    MoffsOperand,
    OperandDescriptor,
    RegisterOperand,
    RelativeOperand,
    VsibOperand,
)
from ..tables import Tables

LONG_MODE_REGISTER_CLASSES = frozenset(("r64", "r8x"))
"""Register classes that can only be encoded in 64-bit mode."""

_evex_annotations = frozenset(
    (Annotation.MASK, Annotation.MASK_ZERO, Annotation.ROUNDING, Annotation.SAE)
)


def _operands_location(instr: Instruction) -> InputLocation | None:
    source = instr.source
    return None if source is None else source.operands


def _encoding_location(instr: Instruction) -> InputLocation | None:
    source = instr.source
    return None if source is None else source.encoding


def _metadata_location(instr: Instruction) -> InputLocation | None:
    source = instr.source
    return None if source is None else source.metadata


def _mnemonic_location(instr: Instruction) -> InputLocation | None:
    source = instr.source
    return None if source is None else source.mnemonic


def check_instruction(instr: Instruction, tables: Tables) -> Iterator[BadInput]:
    """
    Yield an `InconsistentEncoding` error for each way in which the parts of
    the given instruction contradict each other.
    """
    encoding = instr.encoding
    operands = instr.operands
    letters = encoding.operand_encoding
    ops_loc = _operands_location(instr)
    enc_loc = _encoding_location(instr)

    if letters:
        if len(letters) != len(operands):
            yield InconsistentEncoding(
                f'operand encoding "{letters}" has {len(letters):d} letters, '
                f"but there are {len(operands):d} operands",
                enc_loc,
                ops_loc,
            )
        else:
            for index, (letter, operand) in enumerate(zip(letters, operands), 1):
                problem = _check_operand_letter(letter, operand, encoding)
                if problem is not None:
                    yield InconsistentEncoding(
                        f'operand {index:d} cannot be encoded by "{letter}": {problem}',
                        enc_loc,
                        ops_loc,
                    )
    else:
        for index, operand in enumerate(operands, 1):
            if not operand.is_fixed:
                yield InconsistentEncoding(
                    f"operand {index:d} is not implicit, "
                    "but the encoding has no operand encoding",
                    enc_loc,
                    ops_loc,
                )

    for problem in _check_encoding_fields(letters, encoding):
        yield InconsistentEncoding(problem, enc_loc)

    yield from _check_evex_features(instr, encoding)

    if any(
        tables.architectures[arch].width < 64 for arch in encoding.architectures
    ):
        for problem in _check_legacy_mode(instr, tables):
            yield InconsistentEncoding(problem, enc_loc, ops_loc)

    if instr.metadata.lock and not (operands and operands[0].is_memory):
        yield InconsistentEncoding(
            "lock attributes require a memory destination operand",
            _metadata_location(instr),
        )


def _all_alternatives(operand: OperandDescriptor, *types: type) -> bool:
    return all(isinstance(alt, types) for alt in operand.alternatives)


def _check_operand_letter(
    letter: str, operand: OperandDescriptor, encoding: OpcodeEncoding
) -> str | None:
    """
    Return a description of why the operand cannot be encoded in the field
    named by the given letter, or None if it can.
    """
    if letter == "x":
        return None if operand.is_fixed else "operand is not implicit"
    if operand.implicit:
        return 'implicit operand must use "x"'

    match letter:
        case "r" | "v" | "o":
            if not _all_alternatives(operand, RegisterOperand):
                return "operand must be a register"
            return None
        case "m":
            if not _all_alternatives(
                operand,
                RegisterOperand,
                MemoryOperand,
                BroadcastOperand,
                VsibOperand,
                FarPointerOperand,
            ):
                return "operand must be a register or memory reference"
            if not all(
                alt.memory
                for alt in operand.alternatives
                if isinstance(alt, FarPointerOperand)
            ):
                return "immediate far pointer cannot be addressed by ModRM"
            return None
        case "i":
            if _all_alternatives(operand, ImmediateOperand):
                if any(
                    isinstance(alt, ImmediateOperand) and not alt.encoded
                    for alt in operand.alternatives
                ):
                    return "print-only immediate is not encoded"
                if not encoding.has_placeholder(PlaceholderKind.IMMEDIATE):
                    return "opcode has no immediate placeholder"
                return None
            if _all_alternatives(operand, RegisterOperand):
                if not encoding.has_placeholder(PlaceholderKind.REGISTER_IN_IMMEDIATE):
                    return 'register in immediate requires "is4"'
                return None
            return "operand must be an immediate"
        case "d":
            if not _all_alternatives(
                operand, RelativeOperand, MoffsOperand, FarPointerOperand
            ):
                return "operand must be a branch target or memory offset"
            if any(
                alt.memory
                for alt in operand.alternatives
                if isinstance(alt, FarPointerOperand)
            ):
                return "far pointer in memory must be addressed by ModRM"
            if not any(
                encoding.has_placeholder(kind)
                for kind in (
                    PlaceholderKind.OFFSET,
                    PlaceholderKind.MOFFS,
                    PlaceholderKind.IMMEDIATE,
                )
            ):
                return "opcode has no offset placeholder"
            return None
        case _:
            raise AssertionError(letter)


def _check_encoding_fields(letters: str, encoding: OpcodeEncoding) -> Iterator[str]:
    if "r" in letters and (not encoding.modrm or encoding.opcode_extension is not None):
        yield 'operand encoding "r" requires "/r"'
    if "m" in letters and not encoding.modrm:
        yield 'operand encoding "m" requires a ModRM byte'
    if "o" in letters and encoding.register_addend is None:
        yield 'operand encoding "o" requires a register addend'
    if encoding.register_addend is not None and "o" not in letters:
        yield 'register addend requires operand encoding "o"'
    if "v" in letters and encoding.vvvv is None:
        yield 'operand encoding "v" requires "nds", "ndd" or "dds" in the prefix'
    if encoding.vvvv is not None and "v" not in letters:
        yield f'"{encoding.vvvv.value}" requires operand encoding "v"'


def _check_evex_features(
    instr: Instruction, encoding: OpcodeEncoding
) -> Iterator[BadInput]:
    ops_loc = _operands_location(instr)
    enc_loc = _encoding_location(instr)
    is_evex = encoding.is_evex

    if not is_evex:
        for index, operand in enumerate(instr.operands, 1):
            for annotation in Annotation:
                if annotation in _evex_annotations & operand.annotations:
                    yield InconsistentEncoding(
                        f"operand {index:d}: {annotation} requires an EVEX prefix",
                        ops_loc,
                        enc_loc,
                    )
            if operand.broadcast_size is not None:
                yield InconsistentEncoding(
                    f"operand {index:d}: broadcast requires an EVEX prefix",
                    ops_loc,
                    enc_loc,
                )
        return

    has_memory = any(operand.is_memory for operand in instr.operands)
    tuple_type = encoding.tuple_type
    if has_memory and tuple_type is None:
        yield InconsistentEncoding(
            "EVEX encoding with a memory operand requires a tuple type",
            enc_loc,
            ops_loc,
        )
    elif tuple_type is not None and not has_memory:
        yield InconsistentEncoding(
            f'tuple type "{tuple_type.value}" without a memory operand',
            enc_loc,
            ops_loc,
        )


def _check_legacy_mode(instr: Instruction, tables: Tables) -> Iterator[str]:
    encoding = instr.encoding
    if isinstance(encoding.prefix, RexPrefix):
        yield "REX prefix is only available in 64-bit mode"
    if encoding.operand_size == 64:
        yield '"os64" is only available in 64-bit mode'
    if encoding.address_size == 64:
        yield '"as64" is only available in 64-bit mode'
    for index, operand in enumerate(instr.operands, 1):
        for alt in operand.alternatives:
            match alt:
                case RegisterOperand(reg_class=reg_class):
                    pass
                case FixedRegisterOperand(name=name, family=False):
                    reg = tables.register_by_name.get(name)
                    if reg is None:
                        continue
                    reg_class = reg.id
                case _:
                    continue
            if reg_class in LONG_MODE_REGISTER_CLASSES:
                yield f'operand {index:d}: "{alt}" is only available in 64-bit mode'


def check_instruction_set(instructions: Sequence[Instruction]) -> Iterator[BadInput]:
    """
    Yield errors for aliases of missing or identical mnemonics and for
    instructions that are defined more than once.

    Instructions that share a mnemonic, operand shape and architecture must
    be told apart by their forms: one preferred form and at most one
    alternative form.
    """
    mnemonics = {instr.mnemonic for instr in instructions}
    for instr in instructions:
        alias = instr.metadata.alias_of
        if alias is None:
            continue
        if alias == instr.mnemonic:
            yield DanglingAlias(
                f"{instr.mnemonic}: instruction cannot be an alias of itself",
                _metadata_location(instr),
            )
        elif alias not in mnemonics:
            yield DanglingAlias(
                f'{instr.mnemonic}: alias target "{alias}" does not exist',
                _metadata_location(instr),
            )

    groups: dict[tuple[str, tuple[object, ...], str], list[Instruction]]
    groups = defaultdict(list)
    for instr in instructions:
        for arch in sorted(instr.architectures):
            groups[(instr.mnemonic, instr.operand_shape, arch)].append(instr)

    reported: set[int] = set()
    for (_, _, arch), group in groups.items():
        first = group[0]
        forms = {first.metadata.form}
        for instr in group[1:]:
            form = instr.metadata.form
            if form is None or None in forms or form in forms:
                if id(instr) not in reported:
                    reported.add(id(instr))
                    yield DuplicateDefinition(
                        f'duplicate definition of "{instr}" on {arch}',
                        _mnemonic_location(instr),
                        _mnemonic_location(first),
                    )
            else:
                forms.add(form)
        if Form.ALTERNATIVE in forms and Form.PREFERRED not in forms:
            for instr in group:
                if instr.metadata.form is not Form.ALTERNATIVE or id(instr) in reported:
                    continue
                reported.add(id(instr))
                yield InconsistentEncoding(
                    f'"{instr}" is an alternative form on {arch}, '
                    "but there is no preferred form",
                    _metadata_location(instr),
                )
