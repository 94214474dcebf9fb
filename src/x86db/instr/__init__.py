from __future__ import annotations

from collections.abc import Iterator
from importlib.resources import files
from importlib.resources.abc import Traversable
from logging import ERROR, Logger, getLogger

from ..environment import Environment
from ..parser.table_parser import DefinitionParser
from . import defs


def builtin_environment_path(name: str) -> Traversable:
    return files(defs) / f"{name}.insn"


def load_environment(
    path: Traversable, logger: Logger | None = None, *, max_workers: int | None = None
) -> Environment | None:
    """
    Load an instruction set definition from file.

    The best logging is achieved if `LocationFormatter` or another formatter
    that incorporates the `location` extra is used.

    Returns the environment, or None if it could not be loaded.
    """
    if logger is None:
        logger = getLogger(__name__)
    # Log only errors: the definition parser's informational messages are
    # not interesting to users of the environment.
    parser_logger = logger.getChild("parser")
    parser_logger.setLevel(ERROR)

    try:
        return DefinitionParser.parse_file(path, parser_logger, max_workers=max_workers)
    except OSError as ex:
        logger.error("%s: Failed to read instruction set: %s", path, ex.strerror)
        return None


def load_environment_by_name(
    name: str, logger: Logger | None = None
) -> Environment | None:
    """
    Load the named built-in instruction set definition.

    Returns the environment, or None if it could not be loaded.
    """
    if logger is None:
        logger = getLogger(__name__)
    logger.info("Loading instruction set: %s", name)
    return load_environment(builtin_environment_path(name), logger)


class EnvironmentDirectory:
    """
    Loads and caches instruction set definitions from a directory,
    looking them up by name.
    """

    def __init__(self, path: Traversable, logger: Logger | None = None):
        self._path = path
        self._logger = logger or getLogger(__name__)
        self._cache: dict[str, Environment | None] = {}

    def __getitem__(self, name: str) -> Environment | None:
        """
        Return the environment with the given name, or `None` if it is not
        available for any reason.
        """
        try:
            return self._cache[name]
        except KeyError:
            logger = self._logger
            logger.info("Loading instruction set: %s", name)
            environment = load_environment(self._path / f"{name}.insn", logger)
            self._cache[name] = environment
            return environment

    def __iter__(self) -> Iterator[str]:
        """Iterate through the names of the definitions in the directory."""
        for path in self._path.iterdir():
            if path.is_file():
                name = path.name
                if name.endswith(".insn"):
                    yield name[:-5]


builtin_environments = EnvironmentDirectory(files(defs))
"""
Provider for the instruction sets that are included with x86db.
"""
