from __future__ import annotations

from collections.abc import Iterable, Iterator
from enum import Enum, EnumMeta
from re import Pattern
from typing import Any, Callable, TypeAlias, TypeVar, cast
import re

from ..input import InputLocation, MalformedField

_closing_for = {"[": "]", "<": ">", "{": "}"}
_opening_for = {close: open_ for open_, close in _closing_for.items()}


def split_field(location: InputLocation, separator: str) -> list[InputLocation]:
    """
    Split the text in the given location on each occurrence of `separator`
    that is not nested inside brackets ("[]", "<>" or "{}").

    Returns the stripped locations of the pieces between the separators.
    Raises `MalformedField` if the brackets are not balanced.
    """
    line = location.line
    start, end = location.span
    pieces = []
    stack: list[tuple[str, int]] = []
    piece_start = start
    for idx in range(start, end):
        char = line[idx]
        if char in _closing_for:
            stack.append((char, idx))
        elif char in _opening_for:
            if not stack:
                raise MalformedField.with_text(
                    f'unbalanced "{char}"', location.update_span((idx, idx + 1))
                )
            opening, _ = stack.pop()
            if opening != _opening_for[char]:
                raise MalformedField.with_text(
                    f'"{char}" does not close "{opening}"',
                    location.update_span((idx, idx + 1)),
                )
        elif char == separator and not stack:
            pieces.append(location.update_span((piece_start, idx)).strip())
            piece_start = idx + 1
    if stack:
        opening, idx = stack[-1]
        raise MalformedField.with_text(
            f'unclosed "{opening}"', location.update_span((idx, idx + 1))
        )
    pieces.append(location.update_span((piece_start, end)).strip())
    return pieces


_re_whitespace = re.compile(r"\s+")


def split_words(location: InputLocation) -> Iterator[InputLocation]:
    """Yield the locations of the whitespace-separated words in a location."""
    for word in location.strip().split(_re_whitespace):
        if word:
            yield word


class TokenMeta(EnumMeta):
    """Metaclass for `TokenEnum`."""

    pattern: Pattern[str]

    def __new__(
        mcs,
        name: str,
        bases: tuple[type, ...],
        namespace: dict[str, Any],
        **kwargs: Any,
    ) -> TokenMeta:
        new_class = super().__new__(
            mcs,
            name,
            bases,
            # Work around typeshed using a private type for 'namespace'.
            namespace,  # type: ignore[arg-type]
            **kwargs,
        )
        new_class.pattern = new_class._compile_pattern()
        return new_class

    def _compile_pattern(cls) -> Pattern[str]:
        raise NotImplementedError


class TokenEnum(Enum, metaclass=TokenMeta):
    """
    Base class for token types.

    Each member should have as its value the regular expression for
    matching that kind of token. Members are tried in definition order,
    so a catch-all member should be defined last.
    """

    def __init__(self, regex: str):
        self.regex = regex

    @classmethod
    def _compile_pattern(cls) -> Pattern[str]:
        patterns = [r"(\s+)"]
        patterns += (
            f"(?P<{name}>{token.regex})" for name, token in cls.__members__.items()
        )
        return re.compile("|".join(patterns))

    @classmethod
    def _iter_tokens(cls: type[TokenT], location: InputLocation) -> TokenStream[TokenT]:
        for match in location.find_matches(cls.pattern):
            name = match.group_name
            if name is None:
                # Skip whitespace.
                continue
            yield cls[name], match.group(name)
        # Sentinel.
        yield None, location.end_location


T = TypeVar("T")
TokenT = TypeVar("TokenT", bound=TokenEnum)
TokenStream: TypeAlias = Iterable[tuple[TokenT | None, InputLocation]]


class Tokenizer(Iterator[tuple[TokenT, InputLocation]]):
    """
    Specialized iterator for tokenized text.

    Can be used like any other Python iterator, but the `eat()` method is often
    more convenient to check for and consume expected tokens.
    """

    _token_class: type[TokenT]

    def __class_getitem__(cls, item: type[TokenT]) -> type[Tokenizer[TokenT]]:
        class SpecializedTokenizer(
            super().__class_getitem__(item)  # type: ignore[misc]
        ):
            _token_class = item

        return SpecializedTokenizer

    @classmethod
    def get_token_class(cls) -> type[TokenT]:
        try:
            return cls._token_class
        except AttributeError:
            raise TypeError(
                "Tokenizer must be specialized first, "
                "for example Tokenizer[MyTokenEnum]"
            ) from None

    @classmethod
    def scan(cls: type[T], location: InputLocation) -> T:
        """Split an input string into tokens."""
        token_class = cast(Tokenizer[TokenT], cls).get_token_class()
        constructor = cast(Callable[[TokenStream[TokenT]], T], cls)
        return constructor(token_class._iter_tokens(location))

    _kind: TokenT | None
    _location: InputLocation

    @property
    def end(self) -> bool:
        """Has the end of the input been reached?"""
        return self._kind is None

    @property
    def kind(self) -> TokenT:
        """
        The token kind of the current token.
        Raise `ValueError` if called at end of input.
        """
        kind = self._kind
        if kind is None:
            raise ValueError("out of tokens")
        return kind

    @property
    def value(self) -> str:
        """The text of the current token."""
        return self._location.text

    @property
    def location(self) -> InputLocation:
        """The input location of the current token."""
        return self._location

    def __init__(self, tokens: Iterable[tuple[TokenT | None, InputLocation]]):
        """Use `scan()` instead of calling this directly."""
        self._tokens = tuple(tokens)
        self._token_index = 0
        self._advance()

    def __next__(self) -> tuple[TokenT, InputLocation]:
        kind = self._kind
        if kind is None:
            raise StopIteration
        location = self._location
        self._advance()
        return kind, location

    def _advance(self) -> None:
        index = self._token_index
        self._kind, self._location = self._tokens[index]
        if index != len(self._tokens) - 1:
            self._token_index = index + 1

    def peek(self, kind: TokenT, value: str | None = None) -> bool:
        """
        Check whether the current token matches the given kind and,
        if specified, also the given value.
        Return True for a match, False otherwise.
        """
        return self._kind is kind and (value is None or self.value == value)

    def eat(self, kind: TokenT, value: str | None = None) -> InputLocation | None:
        """
        Consume the current token if it matches the given kind and,
        if specified, also the given value.
        Return the token's input location if the token was consumed,
        or None if no match was found.
        """
        found = self.peek(kind, value)
        if found:
            location = self._location
            self._advance()
            return location
        else:
            return None
