"""
Structured form of the metadata column of an instruction definition.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Set
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, override


class FlagEffect(Enum):
    """How an instruction affects a single bit of a flag register."""

    TEST = "T"
    MODIFY = "M"
    CLEAR = "C"
    SET = "S"
    UNDEFINED = "U"
    NOT_AFFECTED = "N"
    TEST_MODIFY = "X"


class LockAttr(Enum):
    """Circumstances under which a LOCK prefix is accepted."""

    HARDWARE = "hardware"
    LEGACY = "legacy"
    IMPLIED = "implied"
    EXPLICIT = "explicit"
    IGNORE = "ignore"


class BranchType(Enum):
    NONE = "none"
    SHORT = "short"
    NEAR = "near"
    FAR = "far"


class Form(Enum):
    """
    Tells which of several definitions with the same operands and
    architecture a disassembler should produce.
    """

    PREFERRED = "preferred"
    ALTERNATIVE = "alternative"


@dataclass(frozen=True)
class CpuidRequirement:
    """
    The processor features an instruction depends on: a disjunction of
    conjunctions of feature names. Without alternatives, the instruction
    is available on every processor.
    """

    alternatives: tuple[frozenset[str], ...] = ()

    @override
    def __str__(self) -> str:
        return "|".join("+".join(sorted(features)) for features in self.alternatives)

    def __bool__(self) -> bool:
        return bool(self.alternatives)

    @property
    def features(self) -> frozenset[str]:
        """All feature names mentioned in this requirement."""
        return frozenset().union(*self.alternatives)

    def satisfied_by(self, features: Set[str]) -> bool:
        """Return True iff a processor with the given features can execute this."""
        if not self.alternatives:
            return True
        return any(required <= features for required in self.alternatives)


@dataclass(frozen=True)
class DeltaExpr:
    """
    A change to a stack pointer: a constant plus a multiple of the
    operand size in bytes.
    """

    constant: int = 0
    os_factor: int = 0

    @override
    def __str__(self) -> str:
        terms = []
        match self.os_factor:
            case 0:
                pass
            case 1:
                terms.append("os")
            case -1:
                terms.append("-os")
            case factor:
                terms.append(f"{factor:d}*os")
        if self.constant or not terms:
            sign = "+" if terms and self.constant > 0 else ""
            terms.append(f"{sign}{self.constant:d}")
        return "".join(terms)

    def evaluate(self, operand_size: int) -> int:
        """Return the delta for the given operand size in bits."""
        return self.constant + self.os_factor * (operand_size // 8)


@dataclass(frozen=True)
class InstructionMetadata:
    cpuid: CpuidRequirement = CpuidRequirement()
    lock: frozenset[LockAttr] = frozenset()
    level: int = 3
    """The most privileged ring (0) up to the least privileged (3) allowed."""

    branch_type: BranchType = BranchType.NONE
    stack_ptr: DeltaExpr | None = None
    fpu_stack_ptr: DeltaExpr | None = None
    alias_of: str | None = None
    form: Form | None = None
    vendor: str | None = None
    deprecated: bool = False
    abandoned: bool = False
    undocumented: bool = False
    bnd: bool = False
    rep: bool = False
    repe: bool = False
    repne: bool = False
    flags: Mapping[str, Mapping[str, FlagEffect]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    """Flag register ID to bit name to effect; unaffected bits are omitted."""

    def flag_effect(self, register: str, bit: str) -> FlagEffect | None:
        """Return the effect on the given flag bit, or None if unspecified."""
        return self.flags.get(register, {}).get(bit)

    def merged(
        self,
        overrides: Mapping[str, Any],
        flags: Mapping[str, Mapping[str, FlagEffect]],
    ) -> InstructionMetadata:
        """
        Return a copy of this metadata with the given field values replaced.
        Flag effects are merged per bit, with the given effects taking
        precedence.
        """
        merged_flags = {reg: dict(bits) for reg, bits in self.flags.items()}
        for reg, bits in flags.items():
            merged_flags.setdefault(reg, {}).update(bits)
        return replace(self, **overrides, flags=_freeze_flags(merged_flags))

    def iter_flag_effects(self) -> Iterable[tuple[str, str, FlagEffect]]:
        for reg, bits in self.flags.items():
            for bit, effect in bits.items():
                yield reg, bit, effect


def _freeze_flags(
    flags: Mapping[str, Mapping[str, FlagEffect]],
) -> Mapping[str, Mapping[str, FlagEffect]]:
    return MappingProxyType(
        {reg: MappingProxyType(dict(bits)) for reg, bits in flags.items() if bits}
    )


DEFAULT_METADATA = InstructionMetadata()
"""Metadata of an instruction that has no metadata clauses at all."""

BOOLEAN_KEYS = (
    "deprecated",
    "abandoned",
    "undocumented",
    "bnd",
    "rep",
    "repe",
    "repne",
)
"""Metadata markers that set the boolean field of the same name."""

VALUE_KEYS = {
    "cpuid": "cpuid",
    "level": "level",
    "branchType": "branch_type",
    "stackPtr": "stack_ptr",
    "fpuStackPtr": "fpu_stack_ptr",
    "aliasOf": "alias_of",
    "form": "form",
    "lock": "lock",
    "vendor": "vendor",
}
"""Maps the keys of "key=value" clauses to metadata field names."""


def format_metadata(
    metadata: InstructionMetadata, base: InstructionMetadata = DEFAULT_METADATA
) -> str:
    """
    Render the clauses that turn `base` into the given metadata.
    Fields that are equal to those of `base` are omitted.
    """
    return " ".join(_iter_clauses(metadata, base))


def _iter_clauses(
    metadata: InstructionMetadata, base: InstructionMetadata
) -> Iterable[str]:
    for key in BOOLEAN_KEYS:
        if getattr(metadata, key) and not getattr(base, key):
            yield key
    for key, field_name in VALUE_KEYS.items():
        value = getattr(metadata, field_name)
        if value == getattr(base, field_name) or value is None:
            continue
        match value:
            case Enum():
                text = value.value
            case frozenset():
                text = "|".join(attr.value for attr in LockAttr if attr in value)
            case _:
                text = str(value)
        yield f"{key}={text}"
    for reg, bit, effect in metadata.iter_flag_effects():
        if base.flag_effect(reg, bit) is not effect:
            yield f"{reg}.{bit}={effect.value}"
