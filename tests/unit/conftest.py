from __future__ import annotations

from inspect import cleandoc
from types import FunctionType

import pytest

from x86db.tables import Tables

from .utils_tables import TEST_MACROS, make_tables


@pytest.fixture
def tables() -> Tables:
    return make_tables(TEST_MACROS, "level=3")


@pytest.fixture
def docstring(request: pytest.FixtureRequest) -> str:
    """Return the cleaned docstring of the test function that requests it."""

    function: FunctionType = request.node.function
    docstring = function.__doc__
    if docstring is None:
        raise pytest.FixtureLookupError(
            request.fixturename, request, "missing docstring"
        )
    return cleandoc(docstring)
