"""
Builds an `Environment` from raw instruction definitions.

Each definition is resolved independently of the others, so definitions are
resolved in parallel. The tables are shared between the workers; they are
never modified once resolution has started. After all definitions have been
resolved, the instruction set is validated as a whole.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from logging import getLogger

from ..environment import Environment
from ..input import BadInput, ErrorCollector, MalformedField
from ..instruction import Instruction, RawInstruction
from ..metadata import DEFAULT_METADATA, InstructionMetadata
from ..tables import Tables
from .metadata_parser import resolve_metadata, resolve_template
from .opcode_parser import parse_encoding
from .operand_parser import parse_operands
from .validator import check_instruction, check_instruction_set

_re_mnemonic = re.compile(r"[a-z][a-z0-9_.]*")

type Resolution = tuple[Instruction | None, list[BadInput]]


def resolve_instruction(
    raw: RawInstruction,
    tables: Tables,
    template: InstructionMetadata = DEFAULT_METADATA,
) -> Resolution:
    """
    Resolve the fields of a raw instruction definition and check whether
    they are consistent with each other.

    Returns the instruction, or None if one of its fields could not be
    resolved, together with all problems that were found. An instruction is
    returned even if it is inconsistent, since it can still be the target of
    an alias or a duplicate of another definition.
    """
    errors: list[BadInput] = []
    mnemonic = raw.mnemonic.text
    if raw.mnemonic.match(_re_mnemonic) is None:
        errors.append(MalformedField.with_text("invalid mnemonic", raw.mnemonic))

    try:
        operands = tuple(parse_operands(raw.operands, tables))
    except BadInput as ex:
        errors.append(ex.in_context(mnemonic))
    try:
        encoding = parse_encoding(raw.encoding, tables.arch_ids)
    except BadInput as ex:
        errors.append(ex.in_context(mnemonic))
    try:
        metadata = resolve_metadata(raw.metadata, tables, template)
    except BadInput as ex:
        errors.append(ex.in_context(mnemonic))
    if errors:
        return None, errors

    instr = Instruction(mnemonic, operands, encoding, metadata, raw)
    errors += (error.in_context(mnemonic) for error in check_instruction(instr, tables))
    return instr, errors


def resolve_instructions(
    raws: Sequence[RawInstruction],
    tables: Tables,
    template: InstructionMetadata = DEFAULT_METADATA,
    max_workers: int | None = None,
) -> list[Resolution]:
    """
    Resolve the given raw instructions, in parallel unless `max_workers`
    is 1. The results are returned in input order.
    """
    # Compute the lazily built indices before the tables are shared.
    tables.register_by_name
    tables.register_families

    resolve = partial(resolve_instruction, tables=tables, template=template)
    if max_workers == 1 or len(raws) <= 1:
        return [resolve(raw) for raw in raws]
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        return list(executor.map(resolve, raws))


def build_environment(
    name: str,
    version: str,
    tables: Tables,
    raw_instructions: Iterable[RawInstruction],
    *,
    collector: ErrorCollector | None = None,
    max_workers: int | None = None,
) -> Environment:
    """
    Resolve and validate instruction definitions.

    Every problem is reported to the collector; when there were problems,
    `DelayedError` is raised after all definitions have been checked,
    with all problems in input order.
    """
    if collector is None:
        collector = ErrorCollector(getLogger(__name__))
    raws = list(raw_instructions)

    with collector.check():
        try:
            template = resolve_template(tables)
        except BadInput as ex:
            collector.report(ex)
            template = DEFAULT_METADATA

        instructions = []
        for instr, errors in resolve_instructions(raws, tables, template, max_workers):
            for error in errors:
                collector.report(error)
            if instr is not None:
                instructions.append(instr)

        for error in check_instruction_set(instructions):
            collector.report(error)

        return Environment(name, version, tables, template, instructions)
