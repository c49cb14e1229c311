"""Host-side configuration: which schema files to load and how loudly to log."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Iterable, List, Mapping, Optional

from protodissect.dissector import DEFAULT_MAX_DEPTH, check_max_depth
from protodissect.errors import SchemaLoadError

DEBUG_LEVEL_ENV = "PROTODISSECT_DEBUG_LEVEL"

_ARG_PATTERN = re.compile(r"^\s*(debug|max_depth)\s*=\s*(\d+)\s*$")
_LEVEL_PATTERN = re.compile(r"^[0-9]+$")


class DebugLevel(IntEnum):
    DISABLED = 0
    LEVEL_1 = 1
    LEVEL_2 = 2


_LOG_LEVELS = {
    DebugLevel.DISABLED: logging.WARNING,
    DebugLevel.LEVEL_1: logging.INFO,
    DebugLevel.LEVEL_2: logging.DEBUG,
}


@dataclass
class Settings:
    # Directories whose *.proto files are all loaded (not recursive).
    proto_dirs: List[str] = field(default_factory=list)
    # Individual .proto files, in addition to the directories above.
    proto_files: List[str] = field(default_factory=list)
    debug_level: int = DebugLevel.DISABLED
    max_depth: int = DEFAULT_MAX_DEPTH
    heuristics: bool = True

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **kwargs) -> Settings:
        environ = os.environ if environ is None else environ
        settings = cls(**kwargs)
        level = environ.get(DEBUG_LEVEL_ENV, "").strip()
        if level:
            if not _LEVEL_PATTERN.match(level):
                raise ValueError(f"Bad value for {DEBUG_LEVEL_ENV}: {level!r}")
            settings.debug_level = _clamp_debug_level(int(level))
        return settings

    def process_cmd_line(self, args: Iterable[str]) -> None:
        """Accept `debug=N`, `max_depth=N` and schema file names."""
        for arg in args:
            if "=" in arg:
                match = _ARG_PATTERN.match(arg)
                if not match:
                    raise ValueError(f"Bad argument given to protodissect: {arg}")
                key, value = match.group(1), int(match.group(2))
                if key == "debug":
                    self.debug_level = _clamp_debug_level(value)
                else:
                    self.max_depth = check_max_depth(value)
            else:
                self.proto_files.append(arg)
        self.configure_logging()

    def get_proto_file_names(self) -> List[str]:
        """Every *.proto in `proto_dirs`, then `proto_files`, without duplicates."""
        names: List[str] = []
        seen = set()

        for dir_name in self.proto_dirs:
            directory = Path(dir_name)
            if not directory.is_dir():
                raise SchemaLoadError(f"Could not find proto directory: {dir_name}")
            for path in sorted(directory.glob("*.proto")):
                if path.is_file() and str(path) not in seen:
                    seen.add(str(path))
                    names.append(str(path))

        for file_name in self.proto_files:
            if not Path(file_name).is_file():
                raise SchemaLoadError(f"Could not find proto file: {file_name}")
            if file_name not in seen:
                seen.add(file_name)
                names.append(file_name)

        return names

    def configure_logging(self) -> None:
        level = _LOG_LEVELS[_clamp_debug_level(self.debug_level)]
        package_logger = logging.getLogger("protodissect")
        package_logger.setLevel(level)
        if not package_logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter("Protobuf-Debug: %(levelname)s %(name)s: %(message)s"))
            package_logger.addHandler(handler)


def _clamp_debug_level(value: int) -> DebugLevel:
    return DebugLevel(min(max(value, DebugLevel.DISABLED), DebugLevel.LEVEL_2))
