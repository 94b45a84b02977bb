"""Otter Configuration — per-project compiler options.

Options come from the first of these files found in the project directory
or one of its parents:

    .otterrc.yml  .otterrc.yaml  .otterrc.json  otter.config.yml  otter.config.json

Example .otterrc.yml:
    target: wasm32          # or "native"
    entry: main
    prelude: true
    warnings_as_errors: false
    max_errors: 50          # 0 = unlimited
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Union

import yaml

from otterc.layout import TARGETS

logger = logging.getLogger(__name__)


@dataclass
class CompilerConfig:
    """Options shared by every stage of one build."""
    target: str = "native"
    entry: str = "main"
    prelude: bool = True
    warnings_as_errors: bool = False
    max_errors: int = 0

    def __post_init__(self) -> None:
        if self.target not in TARGETS:
            raise ValueError(
                f"unknown target '{self.target}' (expected one of {', '.join(TARGETS)})")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CompilerConfig":
        """Build from parsed file contents; keys other than the options are ignored."""
        kwargs = {key: convert(data[key]) for key, convert in _OPTIONS.items() if key in data}
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"expected a boolean, got '{value}'")


_OPTIONS: dict[str, Callable[[Any], Any]] = {
    "target": str,
    "entry": str,
    "prelude": _to_bool,
    "warnings_as_errors": _to_bool,
    "max_errors": int,
}

CONFIG_FILENAMES = (
    ".otterrc.yml",
    ".otterrc.yaml",
    ".otterrc.json",
    "otter.config.yml",
    "otter.config.json",
)


def find_config(start_dir: Union[str, Path] = ".") -> Optional[str]:
    """Path of the nearest config file at or above start_dir, if any."""
    directory = Path(start_dir).resolve()
    for candidate_dir in (directory, *directory.parents):
        for filename in CONFIG_FILENAMES:
            candidate = candidate_dir / filename
            if candidate.is_file():
                return str(candidate)
    return None


def _parse(path: str, text: str) -> Any:
    if path.endswith(".json"):
        return json.loads(text)
    return yaml.safe_load(text)


def load_config(path: Optional[str] = None, start_dir: Union[str, Path] = ".") -> CompilerConfig:
    """Read options from path, or from the file find_config locates.

    Missing, unreadable and malformed files give the defaults. An unknown
    target or an option value of the wrong kind raises ValueError.
    """
    path = path or find_config(start_dir)
    if path is None:
        return CompilerConfig()
    try:
        data = _parse(path, Path(path).read_text(encoding="utf-8"))
    except OSError as e:
        logger.debug("cannot read %s: %s", path, e)
        return CompilerConfig()
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        logger.debug("ignoring malformed config %s: %s", path, e)
        return CompilerConfig()
    if not isinstance(data, dict):
        return CompilerConfig()
    return CompilerConfig.from_dict(data)
