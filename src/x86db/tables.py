"""
Auxiliary tables the instruction resolvers consult: architectures,
register classes and flag registers.

All tables are built before resolution starts and are never modified
afterwards, so they can be shared between worker threads without locking.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from types import MappingProxyType
from typing import override

from .utils import const_property


@dataclass(frozen=True, slots=True)
class Architecture:
    """A target architecture with its native operand and address width."""

    id: str
    width: int

    @override
    def __str__(self) -> str:
        return self.id


@dataclass(frozen=True, slots=True)
class RegisterClass:
    """
    A class of registers that share a width and an encoding space.

    The position of a name in `names` is the value with which that register
    is encoded.
    """

    id: str
    width: int | None
    """Width in bits, or None if the width equals the architecture's width."""

    names: Sequence[str]

    def width_for(self, arch: Architecture) -> int:
        width = self.width
        return arch.width if width is None else width

    def index(self, name: str) -> int:
        """Return the encoding slot of the given register name."""
        return list(self.names).index(name)


RESERVED_BIT = "-"


@dataclass(frozen=True, slots=True)
class FlagRegister:
    """
    A status or control register whose individual bits are affected by
    instructions.

    Bit names are listed in bit order, starting at bit 0. Fields spanning
    multiple bits repeat their name; reserved bits are named "-".
    """

    id: str
    width: int
    bits: Sequence[str]

    def __post_init__(self) -> None:
        if len(self.bits) > self.width:
            raise ValueError(
                f'flag register "{self.id}" has {len(self.bits)} bits, '
                f"more than its width of {self.width}"
            )

    def bit_index(self, name: str) -> int:
        """
        Return the lowest bit position of the named bit or field.
        Raise KeyError if this register has no such bit.
        """
        if name != RESERVED_BIT:
            for index, bit in enumerate(self.bits):
                if bit == name:
                    return index
        raise KeyError(name)

    @property
    def bit_names(self) -> Iterable[str]:
        """The distinct bit and field names, in bit order."""
        return dict.fromkeys(bit for bit in self.bits if bit != RESERVED_BIT)


class Tables:
    """
    The read-only inputs shared by all instruction resolvers.

    Besides the architecture, register and flag register tables, this contains
    the metadata macros (name to replacement text) and the template metadata
    string that provides default values for every instruction.
    """

    def __init__(
        self,
        architectures: Iterable[Architecture],
        register_classes: Iterable[RegisterClass],
        flag_registers: Iterable[FlagRegister],
        macros: Mapping[str, str] | None = None,
        template: str = "",
    ):
        self._architectures = MappingProxyType(
            {arch.id: arch for arch in architectures}
        )
        self._register_classes = MappingProxyType(
            {reg.id: reg for reg in register_classes}
        )
        self._flag_registers = MappingProxyType(
            {flags.id: flags for flags in flag_registers}
        )
        self._macros = MappingProxyType(dict(macros or {}))
        self._template = template

    @override
    def __repr__(self) -> str:
        return (
            f"Tables({list(self._architectures.values())!r}, "
            f"{list(self._register_classes.values())!r}, "
            f"{list(self._flag_registers.values())!r}, "
            f"{dict(self._macros)!r}, {self._template!r})"
        )

    @property
    def architectures(self) -> Mapping[str, Architecture]:
        return self._architectures

    @property
    def register_classes(self) -> Mapping[str, RegisterClass]:
        return self._register_classes

    @property
    def flag_registers(self) -> Mapping[str, FlagRegister]:
        return self._flag_registers

    @property
    def macros(self) -> Mapping[str, str]:
        return self._macros

    @property
    def template(self) -> str:
        return self._template

    @property
    def arch_ids(self) -> frozenset[str]:
        return frozenset(self._architectures)

    @const_property
    def register_by_name(self) -> Mapping[str, RegisterClass]:
        """
        Maps each register name to the first register class containing it.
        """
        index: dict[str, RegisterClass] = {}
        for reg_class in self._register_classes.values():
            for name in reg_class.names:
                index.setdefault(name, reg_class)
        return index

    @const_property
    def register_families(self) -> Mapping[str, frozenset[str]]:
        """
        Maps each family name to the register names belonging to it,
        for example "si" to si, esi and rsi.
        """
        families: dict[str, set[str]] = {}
        for name in self.register_by_name:
            for family in _family_keys(name):
                families.setdefault(family, set()).add(name)
        return {family: frozenset(names) for family, names in families.items()}


def _family_keys(name: str) -> Iterable[str]:
    """
    Yield the family names a register belongs to:
    the register name itself, and without its "e" or "r" width prefix.
    """
    yield name
    if len(name) >= 3 and name[0] in "er" and not name[1].isdigit():
        yield name[1:]
