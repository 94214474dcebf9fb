"""
Parser for instruction set definition files (*.insn).

A definition file consists of blocks. Each block starts with a header line
containing the block type and ends with an empty line:

meta
    "name" and "version" of the instruction set, one per line
arch
    an architecture ID and its width in bits per line
reg
    a register class ID, its width in bits or "*" for the architecture width,
    followed by the register names in encoding order
flags
    a flag register ID, its width in bits, followed by the bit names
    starting at bit 0
macro
    a macro name followed by the metadata text it expands to
template
    metadata clauses that apply to every instruction
insn
    one instruction per line: "mnemonic ; operands ; encoding ; metadata"
"""

from __future__ import annotations

import re
from collections.abc import Callable
from importlib.resources.abc import Traversable
from logging import WARNING, Logger, getLogger

from ..environment import Environment
from ..input import BadInput, DelayedError, ErrorCollector, InputLocation
from ..instruction import RawInstruction
from ..tables import RESERVED_BIT, Architecture, FlagRegister, RegisterClass, Tables
from .builder import build_environment
from .linereader import DefLineReader
from .operand_parser import PLATFORM_REGISTER, SIZED_REGISTER, VECTOR_REGISTER
from .tokens import split_words

_re_header = re.compile(r"([A-Za-z_][A-Za-z0-9_]*)(?:\s+(.*\S))?")
_re_id = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_re_dotted_id = re.compile(r"[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*")
_re_register_name = re.compile(r"[a-z][a-z0-9]*")
_re_bit_name = re.compile(r"[a-z][a-z0-9]*|" + re.escape(RESERVED_BIT))
_re_width = re.compile(r"[1-9][0-9]*")
_re_macro = re.compile(r"(\S+)(?:\s+(.*\S))?")

PSEUDO_REGISTER_CLASSES = frozenset(
    (VECTOR_REGISTER, PLATFORM_REGISTER, SIZED_REGISTER)
)
"""Names that cannot be used as register class IDs."""


def _parse_width(location: InputLocation, collector: ErrorCollector) -> int | None:
    if location.match(_re_width) is None:
        collector.error("width must be a positive number", location=location)
        return None
    width = int(location.text)
    if width % 8 != 0:
        collector.error("width must be a multiple of 8 bits", location=location)
        return None
    return width


def _parse_meta(
    reader: DefLineReader, collector: ErrorCollector, parser: DefinitionParser
) -> None:
    for line in reader.iter_block():
        words = list(split_words(line))
        if len(words) != 2:
            collector.error('expected "name" or "version" with a value', location=line)
            continue
        key, value = words
        match key.text:
            case "name":
                if parser.name is not None:
                    collector.error("name defined more than once", location=key)
                parser.name = value.text
            case "version":
                if parser.version is not None:
                    collector.error("version defined more than once", location=key)
                parser.version = value.text
            case _:
                collector.error(f'unknown meta key "{key.text}"', location=key)


def _parse_arch(
    reader: DefLineReader, collector: ErrorCollector, parser: DefinitionParser
) -> None:
    architectures = parser.architectures
    for line in reader.iter_block():
        words = list(split_words(line))
        if len(words) != 2:
            collector.error(
                "expected architecture ID followed by width", location=line
            )
            continue
        id_loc, width_loc = words
        if id_loc.match(_re_id) is None:
            collector.error("invalid architecture ID", location=id_loc)
            continue
        width = _parse_width(width_loc, collector)
        if width is None:
            continue
        arch_id = id_loc.text
        if arch_id in architectures:
            collector.error(
                f'architecture "{arch_id}" defined more than once', location=id_loc
            )
            continue
        architectures[arch_id] = Architecture(arch_id, width)


def _parse_reg(
    reader: DefLineReader, collector: ErrorCollector, parser: DefinitionParser
) -> None:
    register_classes = parser.register_classes
    for line in reader.iter_block():
        words = list(split_words(line))
        if len(words) < 3:
            collector.error(
                "expected register class ID, width and register names", location=line
            )
            continue
        id_loc, width_loc, *name_locs = words
        class_id = id_loc.text
        if id_loc.match(_re_id) is None:
            collector.error("invalid register class ID", location=id_loc)
            continue
        if class_id in PSEUDO_REGISTER_CLASSES:
            collector.error(
                f'"{class_id}" is reserved and cannot be a register class ID',
                location=id_loc,
            )
            continue
        if class_id in register_classes:
            collector.error(
                f'register class "{class_id}" defined more than once', location=id_loc
            )
            continue

        width: int | None
        if width_loc.text == "*":
            width = None
        else:
            width = _parse_width(width_loc, collector)
            if width is None:
                continue

        names: list[str] = []
        for name_loc in name_locs:
            name = name_loc.text
            if name_loc.match(_re_register_name) is None:
                collector.error("invalid register name", location=name_loc)
            elif name in names:
                collector.error(
                    f'register "{name}" occurs more than once in its class',
                    location=name_loc,
                )
            else:
                names.append(name)
        register_classes[class_id] = RegisterClass(class_id, width, tuple(names))


def _parse_flags(
    reader: DefLineReader, collector: ErrorCollector, parser: DefinitionParser
) -> None:
    flag_registers = parser.flag_registers
    for line in reader.iter_block():
        words = list(split_words(line))
        if len(words) < 3:
            collector.error(
                "expected flag register ID, width and bit names", location=line
            )
            continue
        id_loc, width_loc, *bit_locs = words
        reg_id = id_loc.text
        if id_loc.match(_re_dotted_id) is None:
            collector.error("invalid flag register ID", location=id_loc)
            continue
        if reg_id in flag_registers:
            collector.error(
                f'flag register "{reg_id}" defined more than once', location=id_loc
            )
            continue
        width = _parse_width(width_loc, collector)
        if width is None:
            continue
        bad_bits = [loc for loc in bit_locs if loc.match(_re_bit_name) is None]
        if bad_bits:
            collector.error("invalid flag bit name", location=bad_bits)
            continue
        try:
            flag_register = FlagRegister(
                reg_id, width, tuple(loc.text for loc in bit_locs)
            )
        except ValueError as ex:
            collector.error(f"{ex}", location=line)
            continue
        flag_registers[reg_id] = flag_register


def _parse_macro(
    reader: DefLineReader, collector: ErrorCollector, parser: DefinitionParser
) -> None:
    macros = parser.macros
    for line in reader.iter_block():
        match = line.strip().match(_re_macro)
        assert match is not None, line
        name_loc = match.group(1)
        name = name_loc.text
        if not match.has_group(2):
            collector.error(f'macro "{name}" has no expansion', location=line)
        elif name in macros:
            collector.error(
                f'macro "{name}" defined more than once', location=name_loc
            )
        else:
            macros[name] = match.group(2).text


def _parse_template(
    reader: DefLineReader, collector: ErrorCollector, parser: DefinitionParser
) -> None:
    parser.template.extend(line.text for line in reader.iter_block())


def _parse_insn(
    reader: DefLineReader, collector: ErrorCollector, parser: DefinitionParser
) -> None:
    raw_instructions = parser.raw_instructions
    for line in reader.iter_block():
        try:
            raw_instructions.append(RawInstruction.from_location(line))
        except BadInput as ex:
            collector.report(ex)


type BlockParser = Callable[[DefLineReader, ErrorCollector, DefinitionParser], None]

_block_parsers: dict[str, BlockParser] = {
    "meta": _parse_meta,
    "arch": _parse_arch,
    "reg": _parse_reg,
    "flags": _parse_flags,
    "macro": _parse_macro,
    "template": _parse_template,
    "insn": _parse_insn,
}


class DefinitionParser:
    @classmethod
    def parse_file(
        cls,
        path: Traversable,
        logger: Logger | None = None,
        *,
        max_workers: int | None = None,
    ) -> Environment | None:
        """
        Parse an instruction set definition file and build its environment.

        Returns the environment, or None if the definition contains errors;
        all errors are logged.
        Raises `OSError` if the file cannot be read.
        """

        if logger is None:
            logger = getLogger(__name__)
            logger.setLevel(WARNING)
        collector = ErrorCollector(logger)

        parser = cls()

        with DefLineReader.open(path) as reader:
            parser.parse(reader, collector)
            environment = parser.finalize(
                collector, reader.location, max_workers=max_workers
            )
            collector.summarize(str(path))

        return environment

    def __init__(self) -> None:
        self.name: str | None = None
        self.version: str | None = None
        self.architectures: dict[str, Architecture] = {}
        self.register_classes: dict[str, RegisterClass] = {}
        self.flag_registers: dict[str, FlagRegister] = {}
        self.macros: dict[str, str] = {}
        self.template: list[str] = []
        self.raw_instructions: list[RawInstruction] = []

        self.attempt_creation = True
        """
        Should `finalize()` attempt to build an `Environment`?
        This flag will be set to `False` when errors are encountered during
        parsing, since the tables could be incomplete.
        """

    def parse(self, reader: DefLineReader, collector: ErrorCollector) -> None:
        """Parse the top level of an instruction set definition."""

        num_errors_start = collector.problem_counter.num_errors

        for header in reader:
            if not header:
                continue
            match = header.match(_re_header)
            if match is None:
                collector.error("malformed line outside block", location=header)
                continue
            keyword = match.group(1)
            if match.has_group(2):
                collector.error(
                    "block header must have no arguments", location=match.group(2)
                )
            block_parser = _block_parsers.get(keyword.text)
            if block_parser is None:
                collector.error(
                    f'unknown block type "{keyword.text}"', location=keyword
                )
                reader.skip_block()
            else:
                block_parser(reader, collector, self)

        if collector.problem_counter.num_errors != num_errors_start:
            self.attempt_creation = False

    def finalize(
        self,
        collector: ErrorCollector,
        location: InputLocation | None,
        *,
        max_workers: int | None = None,
    ) -> Environment | None:
        """Check that the definition is complete and build the environment."""

        try:
            with collector.check():
                name = self.name
                if name is None:
                    collector.error(
                        'no name defined in a "meta" block', location=location
                    )
                if not self.architectures:
                    collector.error("no architectures defined", location=location)
                if not self.raw_instructions:
                    collector.error("no instructions defined", location=location)

                if self.attempt_creation and name is not None:
                    tables = Tables(
                        self.architectures.values(),
                        self.register_classes.values(),
                        self.flag_registers.values(),
                        self.macros,
                        " ".join(self.template),
                    )
                    return build_environment(
                        name,
                        self.version or "",
                        tables,
                        self.raw_instructions,
                        collector=collector,
                        max_workers=max_workers,
                    )
                else:
                    return None
        except DelayedError:
            return None
