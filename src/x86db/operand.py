"""
Typed description of instruction operands.

An operand is a union of one or more operand classes (the alternatives
written with "/" in the operand list, such as register-or-memory), together
with its access mode, whether it is implicit and which EVEX features
(masking, rounding) it supports.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import override

from .tables import Architecture
from .utils import bad_type


class Access(Enum):
    """How an instruction accesses an operand."""

    READ = "R"
    WRITE = "W"
    READ_WRITE = "X"


def resolve_default_access(explicit: Access | None, index: int) -> Access:
    """
    Return the access mode of the operand at the given position.

    An explicit access prefix always wins. Without one, the first operand
    is both read and written (the two-operand "dst = dst op src" form) and
    every later operand is only read.
    """
    if explicit is not None:
        return explicit
    return Access.READ_WRITE if index == 0 else Access.READ


class Annotation(Enum):
    """EVEX features written as "{...}" after an operand."""

    MASK = "k"
    MASK_ZERO = "kz"
    ROUNDING = "er"
    SAE = "sae"
    DUP = "dup"

    @override
    def __str__(self) -> str:
        return f"{{{self.value}}}"


# Size expressions


@dataclass(frozen=True, slots=True)
class FixedSize:
    """A size that does not depend on the encoding."""

    bits: int

    @override
    def __str__(self) -> str:
        return f"{self.bits:d}"


@dataclass(frozen=True, slots=True)
class VectorSize:
    """
    A size relative to the vector length: the vector length divided by
    `divisor`. If `low` is set, the operand is the low half of a vector.
    """

    divisor: int = 1
    low: bool = False

    @property
    def suffix(self) -> str:
        if self.low:
            return ".low"
        elif self.divisor == 1:
            return ""
        else:
            return f".{self.divisor:d}"

    @override
    def __str__(self) -> str:
        return f"vl{self.suffix}"


@dataclass(frozen=True, slots=True)
class PlatformSize:
    """The native width of the architecture."""

    @override
    def __str__(self) -> str:
        return "platform"


type SizeExpr = FixedSize | VectorSize | PlatformSize


def evaluate_size(size: SizeExpr, vector_length: int, arch: Architecture) -> int:
    """Return the size in bits for the given vector length and architecture."""
    match size:
        case FixedSize(bits=bits):
            return bits
        case VectorSize(divisor=divisor):
            return vector_length // divisor
        case PlatformSize():
            return arch.width
        case _:
            bad_type(size)


# Operand classes


@dataclass(frozen=True, slots=True)
class RegisterOperand:
    """
    Any register from a register class.

    The pseudo classes "vmm" (an XMM, YMM or ZMM register depending on the
    vector length) and "reg" (general purpose register of platform width)
    are not listed in the register tables.
    """

    reg_class: str
    size: SizeExpr

    @override
    def __str__(self) -> str:
        if isinstance(self.size, VectorSize):
            return f"{self.reg_class}{self.size.suffix}"
        return self.reg_class


@dataclass(frozen=True, slots=True)
class FixedRegisterOperand:
    """
    A specific register. If `family` is set, the register of the same family
    with the effective operand or address size is used, for example
    eax or rax for "*ax".
    """

    name: str
    family: bool = False

    @override
    def __str__(self) -> str:
        return f"*{self.name}" if self.family else self.name


@dataclass(frozen=True, slots=True)
class MemoryOperand:
    """
    A memory reference. A size of None means the size is irrelevant
    (as for "lea"). A second size is used by operands that read two
    values of different sizes ("m16&32").
    """

    size: FixedSize | VectorSize | None
    second_size: int | None = None

    @override
    def __str__(self) -> str:
        match self.size:
            case None:
                return "mem"
            case FixedSize(bits=bits):
                second = "" if self.second_size is None else f"&{self.second_size:d}"
                return f"m{bits:d}{second}"
            case VectorSize() as size:
                return f"vm{size.suffix}"
            case size:
                bad_type(size)


@dataclass(frozen=True, slots=True)
class FarPointerOperand:
    """A 16-bit selector with an offset, either in memory or immediate."""

    offset_size: int
    memory: bool

    @override
    def __str__(self) -> str:
        return f"{'m' if self.memory else 'ptr'}16:{self.offset_size:d}"


@dataclass(frozen=True, slots=True)
class BroadcastOperand:
    """A scalar in memory that is replicated to all vector elements."""

    element_size: int

    @override
    def __str__(self) -> str:
        return f"b{self.element_size:d}"


_vsib_letters = {
    FixedSize(128): "x",
    FixedSize(256): "y",
    FixedSize(512): "z",
    VectorSize(): "v",
    VectorSize(2, True): "l",
}


@dataclass(frozen=True, slots=True)
class VsibOperand:
    """
    A vector of memory addresses, formed from a vector index register
    of the given size.
    """

    element_size: int
    index_size: FixedSize | VectorSize

    @override
    def __str__(self) -> str:
        return f"vm{self.element_size:d}{_vsib_letters[self.index_size]}"


@dataclass(frozen=True, slots=True)
class ImmediateOperand:
    """
    An immediate value. Print-only immediates are shown in the assembly
    syntax but are not part of the encoding.
    """

    size: int
    encoded: bool = True

    @override
    def __str__(self) -> str:
        return f"{'' if self.encoded else 'p'}imm{self.size:d}"


@dataclass(frozen=True, slots=True)
class RelativeOperand:
    """A branch target relative to the next instruction."""

    size: int

    @override
    def __str__(self) -> str:
        return f"rel{self.size:d}"


@dataclass(frozen=True, slots=True)
class MoffsOperand:
    """A memory offset encoded directly, without a ModRM byte."""

    size: int

    @override
    def __str__(self) -> str:
        return f"moffs{self.size:d}"


@dataclass(frozen=True, slots=True)
class ImplicitMemoryOperand:
    """A memory operand addressed by a fixed register, such as "[es:*di]"."""

    segment: str | None
    base: str
    family: bool = False

    @override
    def __str__(self) -> str:
        segment = "" if self.segment is None else f"{self.segment}:"
        return f"[{segment}{'*' if self.family else ''}{self.base}]"


@dataclass(frozen=True, slots=True)
class ConstantOperand:
    """A constant that is part of the instruction, such as the 1 in "shl r/m8, 1"."""

    value: int

    @override
    def __str__(self) -> str:
        return f"{self.value:d}"


type OperandClass = (
    RegisterOperand
    | FixedRegisterOperand
    | MemoryOperand
    | FarPointerOperand
    | BroadcastOperand
    | VsibOperand
    | ImmediateOperand
    | RelativeOperand
    | MoffsOperand
    | ImplicitMemoryOperand
    | ConstantOperand
)


def is_memory_class(cls: OperandClass) -> bool:
    """Return True iff the operand class references memory."""
    match cls:
        case MemoryOperand() | BroadcastOperand() | VsibOperand():
            return True
        case MoffsOperand() | ImplicitMemoryOperand():
            return True
        case FarPointerOperand(memory=memory):
            return memory
        case (
            RegisterOperand()
            | FixedRegisterOperand()
            | ImmediateOperand()
            | RelativeOperand()
            | ConstantOperand()
        ):
            return False
        case _:
            bad_type(cls)


def is_implicit_class(cls: OperandClass) -> bool:
    """Return True iff the operand class is not encoded by any field."""
    match cls:
        case FixedRegisterOperand() | ImplicitMemoryOperand() | ConstantOperand():
            return True
        case ImmediateOperand(encoded=encoded):
            return not encoded
        case _:
            return False


@dataclass(frozen=True, slots=True)
class OperandDescriptor:
    """A fully resolved operand of an instruction."""

    access: Access
    alternatives: tuple[OperandClass, ...]
    implicit: bool = False
    annotations: frozenset[Annotation] = frozenset()

    @override
    def __str__(self) -> str:
        return format_operand(self, None)

    def __iter__(self) -> Iterator[OperandClass]:
        return iter(self.alternatives)

    @property
    def is_memory(self) -> bool:
        """Can this operand reference memory?"""
        return any(is_memory_class(alt) for alt in self.alternatives)

    @property
    def is_register(self) -> bool:
        """Can this operand be a register?"""
        return any(
            isinstance(alt, (RegisterOperand, FixedRegisterOperand))
            for alt in self.alternatives
        )

    @property
    def is_fixed(self) -> bool:
        """Is this operand absent from the encoding?"""
        return self.implicit or all(is_implicit_class(alt) for alt in self.alternatives)

    @property
    def broadcast_size(self) -> int | None:
        """The element size if this operand can be broadcast from memory."""
        for alt in self.alternatives:
            if isinstance(alt, BroadcastOperand):
                return alt.element_size
        return None

    @property
    def is_masked(self) -> bool:
        return bool(self.annotations & {Annotation.MASK, Annotation.MASK_ZERO})

    @property
    def shape(self) -> tuple[tuple[OperandClass, ...], bool]:
        """The part of the operand that distinguishes instruction forms."""
        return self.alternatives, self.implicit


def format_operand(operand: OperandDescriptor, index: int | None) -> str:
    """
    Render an operand in the operand list syntax.

    If the operand's position is given, the access prefix is omitted when
    it equals the default for that position.
    """
    parts = []
    access = operand.access
    if index is None or access is not resolve_default_access(None, index):
        parts.append(f"{access.value}:")
    body = "/".join(str(alt) for alt in operand.alternatives)
    parts.append(f"<{body}>" if operand.implicit else body)
    parts += (
        f" {annotation}"
        for annotation in Annotation
        if annotation in operand.annotations
    )
    return "".join(parts)


def format_operands(operands: Iterable[OperandDescriptor]) -> str:
    """Render an operand list in its canonical form."""
    return ", ".join(format_operand(op, index) for index, op in enumerate(operands))


def operand_shapes(operands: Sequence[OperandDescriptor]) -> tuple[object, ...]:
    return tuple(operand.shape for operand in operands)
