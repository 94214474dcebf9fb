from __future__ import annotations

import sys
from collections.abc import Iterable
from importlib.resources.abc import Traversable
from logging import INFO, Logger, StreamHandler, getLogger
from pathlib import Path
from typing import NoReturn

from click import IntRange, argument, command, get_current_context, option

from .environment import Environment
from .input import LocationFormatter
from .instr import builtin_environment_path, load_environment


def setup_logging(root_level: int) -> Logger:
    handler = StreamHandler()
    formatter = LocationFormatter()
    handler.setFormatter(formatter)
    logger = getLogger()
    logger.addHandler(handler)
    logger.setLevel(root_level)
    return logger


def print_instructions(environment: Environment, features: Iterable[str]) -> None:
    wanted = frozenset(features)
    for instr in environment:
        if wanted and not wanted & instr.metadata.cpuid.features:
            continue
        print(environment.format_instruction(instr))


def print_opcode_index(environment: Environment) -> None:
    keys = sorted(
        environment.opcode_keys, key=lambda key: (key[0], key[1].value, key[2])
    )
    for arch, opcode_map, opcode in keys:
        instrs = environment.by_opcode(arch, opcode_map, opcode)
        names = ", ".join(str(instr) for instr in instrs)
        print(f"{arch} {opcode_map.value} {opcode:02x}: {names}")


def find_definitions(names: Iterable[str]) -> tuple[list[Traversable], bool]:
    """
    Look up definition files by path or built-in name.

    Returns the files found and whether any name could not be resolved.
    """
    files: list[Traversable] = []
    errors = False
    for name in names:
        path = Path(name)
        if path.is_dir():
            files_in_dir = sorted(path.glob("**/*.insn"))
            if files_in_dir:
                files += files_in_dir
            else:
                print(
                    "No definition files (*.insn) in directory:", path, file=sys.stderr
                )
        elif path.is_file():
            files.append(path)
        elif "/" not in name and "\\" not in name and "." not in name:
            files.append(builtin_environment_path(name))
        else:
            print("Instruction set not found:", name, file=sys.stderr)
            errors = True
    return files, errors


@command()
@option(
    "--dump",
    is_flag=True,
    help="Print the normalized instruction definitions.",
)
@option(
    "--dump-index",
    is_flag=True,
    help="Print the opcode index.",
)
@option(
    "--feature",
    "features",
    multiple=True,
    help="Only dump instructions that depend on the given CPUID feature.",
)
@option(
    "-j",
    "--jobs",
    type=IntRange(min=1),
    help="Number of definitions to resolve in parallel.",
)
@argument("insn", nargs=-1, type=str)
def checkdef(
    insn: Iterable[str],
    dump: bool,
    dump_index: bool,
    features: tuple[str, ...],
    jobs: int | None,
) -> NoReturn:
    """
    Check instruction set definition files.

    INSN can be one or more files, directories or built-in instruction set names.
    """

    files, errors = find_definitions(insn)

    if files:
        logger = setup_logging(INFO)
        for insn_file in files:
            logger.info("checking: %s", insn_file)
            environment = load_environment(insn_file, logger, max_workers=jobs)
            if environment is None:
                errors = True
                continue
            logger.info(
                "%s %s: %d instructions, %d mnemonics",
                environment.name,
                environment.version,
                len(environment),
                len(tuple(environment.mnemonics)),
            )
            if dump:
                print_instructions(environment, features)
                print()
            if dump_index:
                print_opcode_index(environment)
                print()
    else:
        print("No files to check", file=sys.stderr)
    get_current_context().exit(1 if errors else 0)
