"""
Structured form of an instruction's opcode encoding: the prefix family with
its fields, the literal opcode bytes and the markers for ModRM, register
addends and immediates.
"""

from __future__ import annotations

from collections.abc import Iterator, Set
from dataclasses import dataclass
from enum import Enum
from typing import override

from .utils import bad_type


class VvvvRole(Enum):
    """How the VEX.vvvv field is used by a register operand."""

    NDS = "nds"
    NDD = "ndd"
    DDS = "dds"


class VectorLength(Enum):
    L128 = "128"
    L256 = "256"
    L512 = "512"
    IGNORED = "lig"
    VARIABLE = "vl"
    """All vector lengths are valid: operands sized "vmm" follow the length."""

    @property
    def bits(self) -> int | None:
        match self:
            case VectorLength.L128:
                return 128
            case VectorLength.L256:
                return 256
            case VectorLength.L512:
                return 512
            case _:
                return None


class MandatoryPrefix(Enum):
    NONE = "np"
    P66 = "66"
    F2 = "f2"
    F3 = "f3"

    @property
    def byte(self) -> int | None:
        return None if self is MandatoryPrefix.NONE else int(self.value, 16)


class OpcodeMap(Enum):
    ONE_BYTE = "00"
    MAP_0F = "0f"
    MAP_0F38 = "0f38"
    MAP_0F3A = "0f3a"
    XOP8 = "map8"
    XOP9 = "map9"
    XOPA = "mapa"

    @property
    def is_xop(self) -> bool:
        return self in (OpcodeMap.XOP8, OpcodeMap.XOP9, OpcodeMap.XOPA)


class WBit(Enum):
    W0 = "w0"
    W1 = "w1"
    IGNORED = "wig"


class VlRestriction(Enum):
    """Restricts the vector lengths an EVEX or VEX instruction exists in."""

    UNRESTRICTED = "vu"
    NO_512 = "vx"


class TupleType(Enum):
    """EVEX memory tuple types, which determine the compressed disp8 scale."""

    FV = "fv"
    HV = "hv"
    FVM = "fvm"
    HVM = "hvm"
    QVM = "qvm"
    OVM = "ovm"
    T1S = "t1s"
    T1F = "t1f"
    T1_4X = "t1_4x"
    T2 = "t2"
    T4 = "t4"
    T8 = "t8"
    M128 = "m128"
    DUP = "dup"


class RegisterAddend(Enum):
    """A register number added to the last opcode byte."""

    ANY = "+r"
    BYTE = "+rb"
    WORD = "+rw"
    DWORD = "+rd"
    QWORD = "+rq"
    FPU = "+i"


class PlaceholderKind(Enum):
    IMMEDIATE = "i"
    OFFSET = "o"
    MOFFS = "m"
    REGISTER_IN_IMMEDIATE = "is4"


class Placeholder(Enum):
    """Bytes following the opcode that are filled from an operand."""

    IB = "ib"
    IW = "iw"
    ID = "id"
    IQ = "iq"
    OB = "ob"
    OW = "ow"
    OD = "od"
    MB = "mb"
    MW = "mw"
    MD = "md"
    MQ = "mq"
    IS4 = "is4"

    @property
    def kind(self) -> PlaceholderKind:
        if self is Placeholder.IS4:
            return PlaceholderKind.REGISTER_IN_IMMEDIATE
        return PlaceholderKind(self.value[0])


# Prefix families


@dataclass(frozen=True, slots=True)
class LegacyPrefix:
    """No encoding prefix beyond the legacy prefix bytes."""

    @override
    def __str__(self) -> str:
        return ""


@dataclass(frozen=True, slots=True)
class RexPrefix:
    """A REX prefix is required, possibly with REX.W set."""

    w: bool

    @override
    def __str__(self) -> str:
        return "rex.w" if self.w else "rex"


@dataclass(frozen=True, slots=True)
class VexPrefix:
    vvvv: VvvvRole | None
    length: VectorLength
    mandatory: MandatoryPrefix
    opcode_map: OpcodeMap
    w: WBit

    @override
    def __str__(self) -> str:
        return _format_prefix(
            "vex", self.vvvv, self.length, self.mandatory, self.opcode_map, self.w
        )


@dataclass(frozen=True, slots=True)
class EvexPrefix:
    vvvv: VvvvRole | None
    length: VectorLength
    mandatory: MandatoryPrefix
    opcode_map: OpcodeMap
    w: WBit
    tuple_type: TupleType | None

    @override
    def __str__(self) -> str:
        return _format_prefix(
            "evex", self.vvvv, self.length, self.mandatory, self.opcode_map, self.w
        )


@dataclass(frozen=True, slots=True)
class XopPrefix:
    vvvv: VvvvRole | None
    length: VectorLength
    opcode_map: OpcodeMap
    w: WBit

    @override
    def __str__(self) -> str:
        return _format_prefix(
            "xop", self.vvvv, self.length, MandatoryPrefix.NONE, self.opcode_map, self.w
        )


@dataclass(frozen=True, slots=True)
class DrexPrefix:
    """The DREX byte of AMD's SSE5 proposal, with its operand order bit."""

    oc: int

    @override
    def __str__(self) -> str:
        return f"drex.oc{self.oc:d}"


type Prefix = LegacyPrefix | RexPrefix | VexPrefix | EvexPrefix | XopPrefix | DrexPrefix


def _format_prefix(
    keyword: str,
    vvvv: VvvvRole | None,
    length: VectorLength,
    mandatory: MandatoryPrefix,
    opcode_map: OpcodeMap,
    w: WBit,
) -> str:
    parts = [keyword]
    if vvvv is not None:
        parts.append(vvvv.value)
    parts.append(length.value)
    if mandatory is not MandatoryPrefix.NONE:
        parts.append(mandatory.value)
    parts.append(opcode_map.value)
    parts.append(w.value)
    return ".".join(parts)


_legacy_mandatory = {0x66, 0xF2, 0xF3}


@dataclass(frozen=True)
class OpcodeEncoding:
    """A fully resolved opcode encoding string."""

    architectures: frozenset[str]
    operand_encoding: str
    """One letter per operand, naming the field that encodes it."""

    prefix: Prefix
    opcode: tuple[int, ...]
    modrm: bool = False
    opcode_extension: int | None = None
    register_addend: RegisterAddend | None = None
    placeholders: tuple[Placeholder, ...] = ()
    operand_size: int | None = None
    address_size: int | None = None
    vl_restriction: VlRestriction | None = None

    @override
    def __str__(self) -> str:
        return self.format()

    def format(self, arch_ids: Set[str] | None = None) -> str:
        """
        Render this encoding in definition syntax.

        The architecture position is written when the encoding is restricted
        to fewer architectures than `arch_ids`, the architectures of the
        instruction set. Without `arch_ids`, it is written for every encoding
        valid on a single architecture.
        """
        return " ".join(self._iter_tokens(arch_ids))

    def _iter_tokens(self, arch_ids: Set[str] | None) -> Iterator[str]:
        positions: list[str] = []
        if arch_ids is None:
            restricted = len(self.architectures) == 1
        else:
            restricted = self.architectures != arch_ids
        if restricted:
            positions += sorted(self.architectures)
        if self.operand_encoding:
            positions.append(self.operand_encoding)
        if (tuple_type := self.tuple_type) is not None:
            positions.append(tuple_type.value)
        if positions:
            yield ":".join(positions) + ":"
        if self.operand_size is not None:
            yield f"os{self.operand_size:d}"
        if self.address_size is not None:
            yield f"as{self.address_size:d}"
        prefix = str(self.prefix)
        if self.vl_restriction is not None:
            prefix += f".{self.vl_restriction.value}"
        if prefix:
            yield prefix
        yield from (f"{byte:02x}" for byte in self.opcode)
        if self.register_addend is not None:
            yield self.register_addend.value
        if self.opcode_extension is not None:
            yield f"/{self.opcode_extension:d}"
        elif self.modrm:
            yield "/r"
        yield from (placeholder.value for placeholder in self.placeholders)

    @property
    def tuple_type(self) -> TupleType | None:
        prefix = self.prefix
        return prefix.tuple_type if isinstance(prefix, EvexPrefix) else None

    @property
    def vvvv(self) -> VvvvRole | None:
        match self.prefix:
            case VexPrefix(vvvv=vvvv) | EvexPrefix(vvvv=vvvv) | XopPrefix(vvvv=vvvv):
                return vvvv
            case LegacyPrefix() | RexPrefix() | DrexPrefix():
                return None
            case prefix:
                bad_type(prefix)

    @property
    def vector_length(self) -> VectorLength | None:
        match self.prefix:
            case VexPrefix(length=length) | EvexPrefix(length=length) | XopPrefix(
                length=length
            ):
                return length
            case LegacyPrefix() | RexPrefix() | DrexPrefix():
                return None
            case prefix:
                bad_type(prefix)

    @property
    def is_evex(self) -> bool:
        return isinstance(self.prefix, EvexPrefix)

    @property
    def _legacy_split(self) -> tuple[MandatoryPrefix, OpcodeMap, tuple[int, ...]]:
        opcode = self.opcode
        mandatory = MandatoryPrefix.NONE
        if len(opcode) >= 2 and opcode[0] in _legacy_mandatory:
            mandatory = MandatoryPrefix(f"{opcode[0]:02x}")
            opcode = opcode[1:]
        if len(opcode) >= 2 and opcode[0] == 0x0F:
            if len(opcode) >= 3 and opcode[1] == 0x38:
                return mandatory, OpcodeMap.MAP_0F38, opcode[2:]
            elif len(opcode) >= 3 and opcode[1] == 0x3A:
                return mandatory, OpcodeMap.MAP_0F3A, opcode[2:]
            else:
                return mandatory, OpcodeMap.MAP_0F, opcode[1:]
        return mandatory, OpcodeMap.ONE_BYTE, opcode

    @property
    def mandatory_prefix(self) -> MandatoryPrefix:
        match self.prefix:
            case VexPrefix(mandatory=mandatory) | EvexPrefix(mandatory=mandatory):
                return mandatory
            case XopPrefix():
                return MandatoryPrefix.NONE
            case LegacyPrefix() | RexPrefix() | DrexPrefix():
                return self._legacy_split[0]
            case prefix:
                bad_type(prefix)

    @property
    def opcode_map(self) -> OpcodeMap:
        match self.prefix:
            case VexPrefix(opcode_map=opcode_map) | EvexPrefix(
                opcode_map=opcode_map
            ) | XopPrefix(opcode_map=opcode_map):
                return opcode_map
            case LegacyPrefix() | RexPrefix() | DrexPrefix():
                return self._legacy_split[1]
            case prefix:
                bad_type(prefix)

    @property
    def opcode_tail(self) -> tuple[int, ...]:
        """The opcode bytes after the mandatory prefix and map escape bytes."""
        match self.prefix:
            case VexPrefix() | EvexPrefix() | XopPrefix():
                return self.opcode
            case LegacyPrefix() | RexPrefix() | DrexPrefix():
                return self._legacy_split[2]
            case prefix:
                bad_type(prefix)

    @property
    def primary_opcode(self) -> int:
        return self.opcode_tail[0]

    def has_placeholder(self, kind: PlaceholderKind) -> bool:
        return any(placeholder.kind is kind for placeholder in self.placeholders)
