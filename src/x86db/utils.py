from __future__ import annotations

from collections.abc import Iterator, MutableMapping, MutableSequence, MutableSet
from functools import update_wrapper
from types import MappingProxyType
from typing import TYPE_CHECKING, NoReturn


class _Impossible:
    pass


def bad_type(value: _Impossible) -> NoReturn:
    """
    Report a type error.

    Call this in the default case of a `match` over a closed union of types:
    if any member of the union is left unhandled, the type checker complains
    about the argument type.
    """
    raise TypeError(type(value).__name__)


def freeze(value: object) -> object:
    """
    Return a read-only equivalent of the given value.

    Iterators and mutable sequences become tuples, mutable sets become
    frozensets and mutable mappings become mapping proxies.
    Other values are returned as-is.
    """
    match value:
        case Iterator() | MutableSequence():
            return tuple(value)
        case MutableSet():
            return frozenset(value)
        case MutableMapping():
            return MappingProxyType(value)
        case _:
            return value


if TYPE_CHECKING:
    const_property = property
else:

    class const_property:
        """
        Decorator for lazily computed properties of objects that are never
        modified after construction, such as the indices of `Tables`.

        The getter runs on first access and its result, made read-only by
        `freeze()`, is stored in an instance attribute named after the getter
        with an underscore prepended.
        """

        def __init__(self, getter):
            self._getter = getter
            self._attr = f"_{getter.__name__}"
            update_wrapper(self, getter)

        def __get__(self, obj, objtype=None):
            if obj is None:
                return self
            attr = self._attr
            try:
                return obj.__dict__[attr]
            except KeyError:
                value = freeze(self._getter(obj))
                obj.__dict__[attr] = value
                return value

        def __set__(self, obj, value):
            raise AttributeError(f"{self._getter.__name__} is read-only")

        def __delete__(self, obj):
            raise AttributeError(f"{self._getter.__name__} is read-only")
