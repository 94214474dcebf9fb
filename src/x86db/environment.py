from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Iterator, Mapping, Sequence
from types import MappingProxyType
from typing import TypeVar, override

from .instruction import Instruction
from .metadata import InstructionMetadata
from .opcode import OpcodeMap
from .tables import Architecture, FlagRegister, RegisterClass, Tables

type OpcodeKey = tuple[str, OpcodeMap, int]

K = TypeVar("K")


class Environment:
    """
    An instruction set: the resolved instructions together with the tables
    they were resolved against.

    Use `build_environment()` to create an environment; an environment
    is never modified after it has been created.
    """

    def __init__(
        self,
        name: str,
        version: str,
        tables: Tables,
        template: InstructionMetadata,
        instructions: Iterable[Instruction],
    ):
        self._name = name
        self._version = version
        self._tables = tables
        self._template = template
        self._instructions = tuple(instructions)

        by_mnemonic: dict[str, list[Instruction]] = defaultdict(list)
        by_opcode: dict[OpcodeKey, list[Instruction]] = defaultdict(list)
        by_feature: dict[str, list[Instruction]] = defaultdict(list)
        for instr in self._instructions:
            by_mnemonic[instr.mnemonic].append(instr)
            for key in _opcode_keys(instr):
                by_opcode[key].append(instr)
            for feature in sorted(instr.metadata.cpuid.features):
                by_feature[feature].append(instr)
        self._by_mnemonic = _freeze_index(by_mnemonic)
        self._by_opcode = _freeze_index(by_opcode)
        self._by_feature = _freeze_index(by_feature)

    @override
    def __repr__(self) -> str:
        return (
            f"Environment({self._name!r}, {self._version!r}, "
            f"{len(self._instructions):d} instructions)"
        )

    def __len__(self) -> int:
        return len(self._instructions)

    def __iter__(self) -> Iterator[Instruction]:
        return iter(self._instructions)

    @property
    def name(self) -> str:
        return self._name

    @property
    def version(self) -> str:
        return self._version

    @property
    def tables(self) -> Tables:
        return self._tables

    @property
    def architectures(self) -> Mapping[str, Architecture]:
        return self._tables.architectures

    @property
    def register_classes(self) -> Mapping[str, RegisterClass]:
        return self._tables.register_classes

    @property
    def flag_registers(self) -> Mapping[str, FlagRegister]:
        return self._tables.flag_registers

    @property
    def macros(self) -> Mapping[str, str]:
        return self._tables.macros

    @property
    def template(self) -> InstructionMetadata:
        """The resolved template metadata that all instructions started from."""
        return self._template

    @property
    def instructions(self) -> Sequence[Instruction]:
        """All instructions, in definition order."""
        return self._instructions

    @property
    def mnemonics(self) -> Iterable[str]:
        """The distinct mnemonics, in definition order."""
        return self._by_mnemonic.keys()

    @property
    def features(self) -> frozenset[str]:
        """The names of all CPUID features that instructions depend on."""
        return frozenset(self._by_feature)

    @property
    def opcode_keys(self) -> Iterable[OpcodeKey]:
        return self._by_opcode.keys()

    def by_mnemonic(self, mnemonic: str) -> Sequence[Instruction]:
        """Return the instructions with the given mnemonic, in definition order."""
        return self._by_mnemonic.get(mnemonic, ())

    def by_opcode(
        self, arch: str, opcode_map: OpcodeMap, opcode: int
    ) -> Sequence[Instruction]:
        """
        Return the instructions that are available on the given architecture
        and whose primary opcode byte in the given opcode map can be the given
        byte. For opcodes with a register addend, every byte that results
        from adding a register number matches.
        """
        return self._by_opcode.get((arch, opcode_map, opcode), ())

    def by_feature(self, feature: str) -> Sequence[Instruction]:
        """Return the instructions that mention the given CPUID feature."""
        return self._by_feature.get(feature, ())

    def format_instruction(self, instr: Instruction) -> str:
        """
        Render an instruction as a definition line for this instruction set:
        template defaults and unrestricted architectures are left out.
        """
        return instr.format(self._template, self._tables.arch_ids)


def _opcode_keys(instr: Instruction) -> Iterator[OpcodeKey]:
    encoding = instr.encoding
    opcode_map = encoding.opcode_map
    primary = encoding.primary_opcode
    # A register addend modifies the last opcode byte.
    if encoding.register_addend is None or len(encoding.opcode_tail) != 1:
        count = 1
    else:
        count = 8
    for arch in sorted(encoding.architectures):
        for offset in range(count):
            yield arch, opcode_map, primary + offset


def _freeze_index(
    index: Mapping[K, list[Instruction]],
) -> Mapping[K, tuple[Instruction, ...]]:
    return MappingProxyType({key: tuple(instrs) for key, instrs in index.items()})
