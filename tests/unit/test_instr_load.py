from __future__ import annotations

from collections.abc import Iterator
from logging import ERROR, INFO, getLogger
from pathlib import Path

import pytest

from x86db.instr import (
    EnvironmentDirectory,
    builtin_environments,
    load_environment,
    load_environment_by_name,
)


@pytest.fixture
def empty_file(tmp_path: Path) -> Iterator[Path]:
    path = tmp_path / "empty.insn"
    with path.open("w"):
        pass
    yield path


def write_definition(tmp_path: Path, name: str, text: str) -> Path:
    path = tmp_path / f"{name}.insn"
    with path.open("w") as out:
        out.write(text + "\n")
    return path


def test_load_instr_nofile(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    """
    Attempting to load a non-existing instruction set file fails gracefully
    and logs the error.
    """
    path = tmp_path / "nosuchfile.insn"
    logger = getLogger("test")
    env = load_environment(path, logger)
    assert caplog.record_tuples == [
        (
            "test",
            ERROR,
            f"{path}: Failed to read instruction set: No such file or directory",
        ),
    ]
    assert env is None


def test_load_instr_empty(empty_file: Path, caplog: pytest.LogCaptureFixture) -> None:
    """
    Attempting to load an empty instruction set file fails gracefully
    and logs the error.
    """
    logger = getLogger("test")
    env = load_environment(empty_file, logger)
    assert caplog.record_tuples == [
        ("test.parser", ERROR, 'no name defined in a "meta" block'),
        ("test.parser", ERROR, "no architectures defined"),
        ("test.parser", ERROR, "no instructions defined"),
        ("test.parser", ERROR, "3 errors and 0 warnings"),
    ]
    assert env is None


def test_load_instr_minimal(
    tmp_path: Path, docstring: str, caplog: pytest.LogCaptureFixture
) -> None:
    """
    meta
    name tiny

    arch
    x86 32

    # Comment lines do not end a block.
    reg
    r8 8 al cl dl bl ah ch dh bh
    # mm 64 mm0 mm1

    insn
    nop ; ; 90
    add ; r/m8, r8 ; mr: 00 /r  # trailing comment
    """
    logger = getLogger("test")
    logger.setLevel(INFO)
    env = load_environment(write_definition(tmp_path, "tiny", docstring), logger)
    assert caplog.record_tuples == []
    assert env is not None
    assert env.name == "tiny"
    assert env.version == ""
    assert [env.format_instruction(instr) for instr in env] == [
        "nop ;  ; 90",
        "add ; r8/m8, r8 ; mr: 00 /r",
    ]


def test_load_instr_bad_blocks(
    tmp_path: Path, docstring: str, caplog: pytest.LogCaptureFixture
) -> None:
    """
    meta
    name bad
    version 1

    arch
    x86 33

    frob
    whatever

    insn
    nop ; 90
    """
    logger = getLogger("test")
    path = write_definition(tmp_path, "bad", docstring)
    env = load_environment(path, logger)
    assert caplog.record_tuples == [
        ("test.parser", ERROR, "width must be a multiple of 8 bits"),
        ("test.parser", ERROR, 'unknown block type "frob"'),
        ("test.parser", ERROR, 'expected 3 or 4 fields separated by ";", got 2'),
        ("test.parser", ERROR, "no architectures defined"),
        ("test.parser", ERROR, "no instructions defined"),
        ("test.parser", ERROR, "5 errors and 0 warnings"),
    ]
    assert env is None


def test_load_instr_invalid_instruction(
    tmp_path: Path, docstring: str, caplog: pytest.LogCaptureFixture
) -> None:
    """
    meta
    name broken

    arch
    x86 32

    insn
    nop ; ; 90
    foo ; qq ; 91
    """
    logger = getLogger("test")
    path = write_definition(tmp_path, "broken", docstring)
    env = load_environment(path, logger, max_workers=1)
    assert env is None
    (error, summary) = caplog.record_tuples
    name, level, message = error
    assert (name, level) == ("test.parser", ERROR)
    assert message.startswith("foo: ")
    assert message.endswith('unknown operand token: "qq"')
    assert summary == ("test.parser", ERROR, "1 error and 0 warnings")


def test_load_builtin(caplog: pytest.LogCaptureFixture) -> None:
    """The instruction set that ships with the package has no problems."""
    logger = getLogger("test")
    env = load_environment_by_name("x86", logger)
    assert [record for record in caplog.records if record.levelno >= ERROR] == []
    assert env is not None
    assert env.name == "x86"
    assert sorted(env.architectures) == ["x64", "x86"]
    assert len(env.by_mnemonic("add")) > 1
    (alias,) = env.by_mnemonic("je")
    assert alias.metadata.alias_of == "jz"


def test_builtin_directory() -> None:
    """The directory of built-in instruction sets caches what it loads."""
    assert "x86" in builtin_environments
    env = builtin_environments["x86"]
    assert env is not None
    assert builtin_environments["x86"] is env


def test_directory_missing(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    directory = EnvironmentDirectory(tmp_path, getLogger("test"))
    assert list(directory) == []
    assert directory["nosuchset"] is None
    assert caplog.record_tuples[-1][1] == ERROR
