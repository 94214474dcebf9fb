from __future__ import annotations

import re
from collections.abc import Set
from dataclasses import dataclass, field
from typing import Self, override

from .input import InputLocation, MalformedField
from .metadata import DEFAULT_METADATA, FlagEffect, InstructionMetadata, format_metadata
from .opcode import OpcodeEncoding
from .operand import Annotation, OperandDescriptor, format_operands, operand_shapes

FIELD_SEPARATOR = ";"

_re_field_sep = re.compile(FIELD_SEPARATOR)


@dataclass(frozen=True, slots=True)
class RawInstruction:
    """
    The four text fields of an instruction definition, as found in the input.

    Each field is an `InputLocation`, so problems found while resolving
    the fields can be reported with the offending text highlighted.
    """

    mnemonic: InputLocation
    operands: InputLocation
    encoding: InputLocation
    metadata: InputLocation

    @classmethod
    def from_strings(
        cls,
        mnemonic: str,
        operands: str,
        encoding: str,
        metadata: str = "",
        path: str = "<string>",
    ) -> Self:
        """
        Create a raw instruction from separate strings.

        The fields are joined into a single line, so all of them can be shown
        when reporting a problem.
        """
        fields = (mnemonic, operands, encoding, metadata)
        line = f"{FIELD_SEPARATOR} ".join(fields)
        spans = []
        start = 0
        for text in fields:
            spans.append((start, start + len(text)))
            start += len(text) + len(FIELD_SEPARATOR) + 1
        mnemonic_loc, operands_loc, encoding_loc, metadata_loc = (
            InputLocation(path, -1, line, span) for span in spans
        )
        return cls(mnemonic_loc, operands_loc, encoding_loc, metadata_loc)

    @classmethod
    def from_location(cls, location: InputLocation) -> Self:
        """
        Split a definition line of the form
        "mnemonic ; operands ; encoding ; metadata" into its fields.
        The metadata field can be omitted.
        Raises `MalformedField` if the line has too few or too many fields.
        """
        fields = [loc.strip() for loc in location.split(_re_field_sep)]
        if len(fields) == 3:
            fields.append(location.end_location)
        if len(fields) != 4:
            raise MalformedField(
                f"expected 3 or 4 fields separated by "
                f'"{FIELD_SEPARATOR}", got {len(fields):d}',
                location,
            )
        mnemonic_loc, operands_loc, encoding_loc, metadata_loc = fields
        return cls(mnemonic_loc, operands_loc, encoding_loc, metadata_loc)

    @override
    def __str__(self) -> str:
        fields = (self.mnemonic, self.operands, self.encoding, self.metadata)
        return f"{FIELD_SEPARATOR} ".join(loc.text for loc in fields)


@dataclass(frozen=True)
class Instruction:
    """A fully resolved and validated instruction definition."""

    mnemonic: str
    operands: tuple[OperandDescriptor, ...]
    encoding: OpcodeEncoding
    metadata: InstructionMetadata
    source: RawInstruction | None = field(default=None, compare=False, repr=False)
    """The definition this instruction was resolved from, if known."""

    @override
    def __str__(self) -> str:
        operands = format_operands(self.operands)
        return f"{self.mnemonic} {operands}" if operands else self.mnemonic

    def format(
        self,
        template: InstructionMetadata = DEFAULT_METADATA,
        arch_ids: Set[str] | None = None,
    ) -> str:
        """
        Render this instruction as a definition line that resolves to
        an equal instruction when the given template is in effect.

        Pass the architectures of the instruction set as `arch_ids` to
        omit the architecture position from encodings valid on all of them.
        """
        fields = [
            self.mnemonic,
            format_operands(self.operands),
            self.encoding.format(arch_ids),
        ]
        metadata = format_metadata(self.metadata, template)
        if metadata:
            fields.append(metadata)
        return f" {FIELD_SEPARATOR} ".join(fields)

    @property
    def architectures(self) -> frozenset[str]:
        return self.encoding.architectures

    @property
    def operand_shape(self) -> tuple[object, ...]:
        """
        The operand classes without access modes and annotations.
        Instructions that share a mnemonic, architecture and operand shape
        are different encodings of the same instruction.
        """
        return operand_shapes(self.operands)

    def _has_annotation(self, annotation: Annotation) -> bool:
        return any(annotation in operand.annotations for operand in self.operands)

    @property
    def supports_rounding(self) -> bool:
        """Does this instruction accept an embedded rounding mode?"""
        return self._has_annotation(Annotation.ROUNDING)

    @property
    def supports_sae(self) -> bool:
        """Can floating point exceptions be suppressed for this instruction?"""
        return self._has_annotation(Annotation.SAE) or self.supports_rounding

    @property
    def is_masked(self) -> bool:
        return any(operand.is_masked for operand in self.operands)

    def flag_effect(self, register: str, bit: str) -> FlagEffect | None:
        return self.metadata.flag_effect(register, bit)
