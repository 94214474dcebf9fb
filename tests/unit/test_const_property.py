from __future__ import annotations

import pytest

from x86db.tables import RegisterClass, Tables
from x86db.utils import const_property, freeze

from .utils_tables import make_tables


class CountingTables(Tables):
    def __init__(self, *args: object, **kwargs: object):
        super().__init__(*args, **kwargs)  # type: ignore[arg-type]
        self.calls = 0

    @const_property
    def class_names(self) -> list[str]:
        """Names of the register classes."""
        self.calls += 1
        return list(self.register_classes)


def counting_tables() -> CountingTables:
    base = make_tables()
    return CountingTables(
        base.architectures.values(),
        base.register_classes.values(),
        base.flag_registers.values(),
    )


def test_no_get() -> None:
    """Nothing is computed unless the property is read."""
    tables = counting_tables()
    assert tables.calls == 0


def test_get_once() -> None:
    """The getter is evaluated only once."""
    tables = counting_tables()
    first = tables.class_names
    assert tables.calls == 1
    assert tables.class_names is first
    assert tables.calls == 1


def test_readonly_list_value() -> None:
    """A returned list is converted to a tuple."""
    tables = counting_tables()
    assert tables.class_names[:2] == ("r8", "r16")
    with pytest.raises(AttributeError):
        tables.class_names.append("bnd")  # type: ignore[attr-defined]


def test_register_by_name_readonly(tables: Tables) -> None:
    """The register name index cannot be modified."""
    assert tables.register_by_name["al"].id == "r8"
    with pytest.raises(TypeError):
        bnd = RegisterClass("bnd", 128, ("bnd0",))
        tables.register_by_name["bnd0"] = bnd  # type: ignore[index]


def test_register_by_name_first_class(tables: Tables) -> None:
    """A name in several classes maps to the first class defining it."""
    assert tables.register_by_name["cl"].id == "r8"
    assert tables.register_by_name["sil"].id == "r8x"


def test_register_families(tables: Tables) -> None:
    """A family contains the registers of all widths with the same role."""
    assert tables.register_families["si"] == frozenset(("si", "esi", "rsi"))
    assert tables.register_families["ax"] == frozenset(("ax", "eax", "rax"))
    assert tables.register_families["r8"] == frozenset(("r8",))


def test_readonly_property(tables: Tables) -> None:
    """The property cannot be set or deleted."""
    with pytest.raises(AttributeError):
        tables.register_by_name = {}  # type: ignore[misc]
    with pytest.raises(AttributeError):
        del tables.register_by_name


def test_get_class() -> None:
    """The wrapper can be accessed via the class."""
    assert isinstance(Tables.register_by_name, const_property)


def test_docstring() -> None:
    """The docstring is copied."""
    assert CountingTables.class_names.__doc__ == "Names of the register classes."


def test_freeze() -> None:
    """Mutable containers and iterators are converted to read-only values."""
    assert freeze(iter([1, 2])) == (1, 2)
    assert freeze({"a"}) == frozenset("a")
    frozen = freeze({"a": 1})
    assert frozen == {"a": 1}
    with pytest.raises(TypeError):
        frozen["b"] = 2  # type: ignore[index]
    text = "unchanged"
    assert freeze(text) is text
