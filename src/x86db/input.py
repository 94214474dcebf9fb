from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from logging import ERROR, INFO, WARNING, Formatter, Logger, LogRecord, getLogger
from re import Match, Pattern
from typing import Self, override


@dataclass(frozen=True, slots=True)
class InputLocation:
    """
    Describes a particular location in an input text.
    This can be used to provide context in error reporting, by passing it as
    the 'location' argument to the log methods of `ErrorCollector`.
    """

    @classmethod
    def from_string(cls, text: str, path: str = "<string>") -> Self:
        """Create a location spanning a single-line string."""

        return cls(path, -1, text, (0, len(text)))

    path: str
    """
    The path to the input text file.

    This path is only used for logging; it does not need to refer to any real file.
    """

    lineno: int
    """
    The number of this location's line in the input file,
    where line 1 is the first line.
    A value of -1 is used when no line number information is available.
    """

    line: str
    """The contents of the input line that this location describes."""

    span: tuple[int, int]
    """
    The column span of this location, as a slice of `line`:
    the start index is inclusive and the end index is exclusive.
    """

    def __len__(self) -> int:
        start, end = self.span
        return end - start

    def __bool__(self) -> bool:
        return self.span[0] != self.span[1]

    def update_span(self, span: tuple[int, int]) -> InputLocation:
        """
        Return a location on the same line with the given column span.
        The original is unmodified.
        """
        return InputLocation(self.path, self.lineno, self.line, span)

    def slice(self, start: int, end: int | None = None) -> InputLocation:
        """
        Return a location for a part of this location's text,
        with indices relative to the start of this location's span.
        """
        span_start, span_end = self.span
        new_start = min(span_start + start, span_end)
        new_end = span_end if end is None else min(span_start + end, span_end)
        return self.update_span((new_start, max(new_start, new_end)))

    def strip(self) -> InputLocation:
        """Return a location with leading and trailing whitespace removed."""
        start, end = self.span
        line = self.line
        while start < end and line[start].isspace():
            start += 1
        while end > start and line[end - 1].isspace():
            end -= 1
        return self.update_span((start, end))

    @property
    def end_location(self) -> InputLocation:
        """A zero-length location marking the end point of this location."""
        end = self.span[1]
        return self.update_span((end, end))

    @property
    def text(self) -> str:
        """The text described by this location: the spanned substring."""
        return self.line[slice(*self.span)]

    def match(self, pattern: Pattern[str]) -> InputMatch | None:
        """
        Match the text in this location to the given compiled regular
        expression pattern.
        Return an `InputMatch` object, or None if the text does not match.
        """
        match = pattern.fullmatch(self.line, *self.span)
        return None if match is None else InputMatch(self, match)

    def find_matches(self, pattern: Pattern[str]) -> Iterator[InputMatch]:
        """
        Search the text in this location for the given compiled regular
        expression pattern, yielding an `InputMatch` object for each match.
        """
        for match in pattern.finditer(self.line, *self.span):
            yield InputMatch(self, match)

    def split(self, pattern: Pattern[str]) -> Iterator[InputLocation]:
        """
        Split the text in this location using the given pattern as a separator,
        yielding locations for the text between the separators.
        """
        search_start, search_end = self.span
        curr = search_start
        for match in pattern.finditer(self.line, search_start, search_end):
            sep_start, sep_end = match.span(0)
            yield self.update_span((curr, sep_start))
            curr = sep_end
        yield self.update_span((curr, search_end))


class InputMatch:
    """
    The result of a regular expression operation on an `InputLocation`.
    The interface is inspired by, but not equal to, that of match objects from
    the "re" module of the standard library.
    """

    __slots__ = ("_location", "_match")

    def __init__(self, location: InputLocation, match: Match[str]):
        self._location = location
        self._match = match

    def has_group(self, index: int | str) -> bool:
        """Return True iff a group matched at the given index or name."""
        return self._match.span(index) != (-1, -1)

    def group(self, index: int | str) -> InputLocation:
        """
        Return an `InputLocation` for the group matched at the given index,
        which can be a name or a numeric index with the first group being 1.
        If the group did not participate in the match, ValueError is raised.
        """
        span = self._match.span(index)
        if span == (-1, -1):
            name = f"{index}" if isinstance(index, int) else f'"{index}"'
            raise ValueError(f"group {name} was not part of the match")
        else:
            return self._location.update_span(span)

    @property
    def group_name(self) -> str | None:
        """
        The name of the last matched group, or None if last matched group
        was nameless or no groups were matched.
        """
        return self._match.lastgroup


class BadInput(Exception):
    """
    An exception which contains information about the part of the input
    which is considered to violate a rule.
    The `locations` attribute contains `InputLocation` objects describing
    the location(s) in the input that triggered the exception.

    Each kind of violation has its own subclass, so consumers can tell them
    apart without inspecting the message.
    """

    @classmethod
    def with_text(cls, msg: str, location: InputLocation | None) -> Self:
        """
        Return an instance of the class this is called on,
        with the input text in the location's span appended after the error
        message.
        """
        if location is None:
            return cls(msg)
        else:
            return cls(f'{msg}: "{location.text}"', location)

    def __init__(self, msg: str, *locations: InputLocation | None):
        Exception.__init__(self, msg)
        self.locations = tuple(loc for loc in locations if loc is not None)

    @property
    def message(self) -> str:
        return str(self)

    def in_context(self, context: str) -> Self:
        """
        Return a copy of this exception of the same kind, with the given context
        (such as a mnemonic or operand index) prepended to the message.
        """
        return type(self)(f"{context}: {self}", *self.locations)


class MalformedField(BadInput):
    """A raw field has unbalanced brackets or misplaced delimiters."""


class UnknownOperandToken(BadInput):
    """An operand token does not match any entry of the operand vocabulary."""


class InvalidOpcodeGrammar(BadInput):
    """An opcode encoding string does not follow the encoding grammar."""


class UnknownMetadataKey(BadInput):
    """A metadata clause uses an unknown key or an invalid value."""


class UnknownFlagBit(BadInput):
    """A flag effect clause names a bit its flag register does not have."""


class InconsistentEncoding(BadInput):
    """The fields of an instruction contradict each other."""


class DanglingAlias(BadInput):
    """An instruction is an alias of a mnemonic that does not exist."""


class DuplicateDefinition(BadInput):
    """An instruction with the same mnemonic, operands and architecture exists."""


class RecursiveMacro(BadInput):
    """A metadata macro expands to itself, directly or indirectly."""


class ErrorCollector:
    """
    A wrapper for a logger with support for locations.

    Log methods can be passed an `InputLocation` with context information.
    Errors and warnings reported in this way are counted and errors are kept,
    so all problems can be presented together at the end of a processing step.
    The companion class `LocationFormatter` can be used to incorporate the
    context information in the logging.
    """

    @property
    def errors(self) -> Sequence[BadInput]:
        return self._errors

    def __init__(self, logger: Logger | None = None):
        self._logger = getLogger(__name__) if logger is None else logger
        self.problem_counter = ProblemCounter()
        self._errors: list[BadInput] = []

    @override
    def __repr__(self) -> str:
        return (
            f"ErrorCollector(logger={self._logger!r}, "
            f"problem_counter={self.problem_counter!r}, errors={self._errors!r})"
        )

    @override
    def __str__(self) -> str:
        return str(self.problem_counter)

    def error(
        self,
        msg: str,
        *,
        location: InputLocation | None | Sequence[InputLocation | None] = None,
        kind: type[BadInput] = BadInput,
    ) -> None:
        if isinstance(location, Sequence):
            locations = tuple(location)
        else:
            locations = (location,)
        self.report(kind(msg, *locations))

    def report(self, error: BadInput) -> None:
        """Log and remember an error that was raised as an exception."""
        self._logger.error("%s", error, extra={"location": error.locations or None})
        self.problem_counter.num_errors += 1
        self._errors.append(error)

    def warning(
        self,
        msg: str,
        *,
        location: InputLocation | None | Sequence[InputLocation | None] = None,
    ) -> None:
        self._logger.warning("%s", msg, extra={"location": location})
        self.problem_counter.num_warnings += 1

    def info(
        self,
        msg: str,
        *,
        location: InputLocation | None | Sequence[InputLocation | None] = None,
    ) -> None:
        self._logger.info("%s", msg, extra={"location": location})

    def summarize(self, path: str) -> None:
        """Log a message containing the error and warning counts."""
        problem_counter = self.problem_counter
        self._logger.log(
            problem_counter.level, "%s", str(problem_counter), extra={"location": path}
        )

    @contextmanager
    def check(self) -> Iterator[ErrorCollector]:
        """
        Create a context in which errors are collected.

        Raise `DelayedError` on context close if any errors were reported
        on this collector within the context.
        """
        num_errors_before = len(self._errors)
        try:
            yield self
        except DelayedError as delayed:
            if delayed._collector is not self:
                raise
        errors = self._errors[num_errors_before:]
        if errors:
            group = DelayedError(_pluralize(len(errors), "error"), errors)
            group._collector = self
            raise group


class DelayedError(ExceptionGroup[BadInput]):
    """
    Raised when one or more errors were encountered when processing input.

    Since we want to report as many errors as possible in each processing,
    errors are logged and processing continues. However, it usually doesn't
    make sense to continue with later processing steps, since the incomplete
    output caused by earlier errors would trigger new errors. Therefore
    at the end of a processing step DelayedError can be raised to abort
    processing.
    """

    _collector: ErrorCollector | None = None


@dataclass(slots=True)
class ProblemCounter:
    """Error and warning counts."""

    num_errors: int = 0
    num_warnings: int = 0

    @property
    def level(self) -> int:
        """Logging level corresponding to the problems counted."""
        if self.num_errors > 0:
            return ERROR
        elif self.num_warnings > 0:
            return WARNING
        else:
            return INFO

    @override
    def __str__(self) -> str:
        return (
            f"{_pluralize(self.num_errors, 'error')} and "
            f"{_pluralize(self.num_warnings, 'warning')}"
        )


def _pluralize(count: int, noun: str) -> str:
    return f"{count:d} {noun}{'' if count == 1 else 's'}"


class LocationFormatter(Formatter):
    @override
    def format(self, record: LogRecord) -> str:
        msg = super().format(record)
        if record.levelno == ERROR:
            msg = f"ERROR: {msg}"
        elif record.levelno == WARNING:
            msg = f"warning: {msg}"
        location: None | str | InputLocation | Sequence[InputLocation] = getattr(
            record, "location", None
        )
        return "\n".join(_format_parts(_iter_parts(msg, location)))


type _Part = tuple[str | None, str | None, int, str | None, Sequence[tuple[int, int]]]


def _iter_parts(
    msg: str, location: None | str | InputLocation | Sequence[InputLocation]
) -> Iterator[_Part]:
    if location is None:
        yield msg, None, -1, None, []
    elif isinstance(location, InputLocation):
        loc = location
        yield msg, loc.path, loc.lineno, loc.line, [loc.span]
    elif isinstance(location, str):
        yield msg, location, -1, None, []
    else:
        multi_msg: str | None = msg
        i = 0
        while i < len(location):
            # Merge spans of following locations on the same line.
            loc = location[i]
            spans = [loc.span]
            i += 1
            while (
                i < len(location)
                and location[i].lineno == loc.lineno
                and location[i].path == loc.path
                and location[i].line == loc.line
            ):
                spans.append(location[i].span)
                i += 1
            yield multi_msg, loc.path, loc.lineno, loc.line, spans
            multi_msg = None


def _format_parts(parts: Iterable[_Part]) -> Iterator[str]:
    for msg, path, lineno, line, spans in parts:
        yield "".join(_format_message(msg, path, lineno))
        if line is not None:
            yield line

            length = len(line) + 1
            span_line = " " * length
            last = len(spans) - 1
            for i, (start, end) in enumerate(reversed(spans)):
                start = min(start, length)
                end = min(end, length)
                if start > end:
                    continue
                elif start == end:
                    # Highlight empty span using single character.
                    end = start + 1
                highlight = ("^" if i == last else "~") * (end - start)
                span_line = span_line[:start] + highlight + span_line[end:]
            span_line = span_line.rstrip()
            if span_line:
                yield span_line


def _format_message(msg: str | None, path: str | None, lineno: int) -> Iterator[str]:
    if path is None:
        assert msg is not None
        yield msg
    else:
        yield f"{path}:"
        if lineno != -1:
            yield f"{lineno:d}:"
        if msg is not None:
            yield f" {msg}"
