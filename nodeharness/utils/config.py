"""
Config plumbing shared by every config section: the `config` decorator
builds pydantic dataclasses, and the YAML helpers produce the raw mapping
those dataclasses are validated from.
"""

import copy
from collections.abc import Sequence
from dataclasses import field
from pathlib import Path
from typing import Any, dataclass_transform

import yaml
from pydantic import Field, PrivateAttr
from pydantic.dataclasses import dataclass as pydantic_dataclass

from nodeharness.errors import ConfigError


def list_(vals: list[Any] | None = None) -> Any:
    if vals is None:
        return Field(default_factory=list)

    return Field(default_factory=lambda: copy.deepcopy(vals))


@dataclass_transform(field_specifiers=(field, Field, PrivateAttr))
def config(
    *,
    frozen: bool = False,
    allow_extra: bool = False,
):
    """Unknown keys are rejected unless `allow_extra`, so typos in YAML fail loudly."""
    def _inner(cls: Any):
        return pydantic_dataclass(
            cls,
            frozen=frozen,
            config={
                'extra': 'ignore' if allow_extra else 'forbid',
            },
        )
    return _inner


# -----------------
# -- Raw mapping --
# -----------------
def read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Config file not found at {path}")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Could not parse {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Top level of {path} must be a mapping")

    return raw


def _set_dotted(target: dict[str, Any], key: str, value: Any) -> None:
    *parents, leaf = key.split(".")
    node = target
    for part in parents:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[leaf] = value


def apply_overrides(raw: dict[str, Any], overrides: Sequence[str]) -> dict[str, Any]:
    """
    Apply `a.b.c=value` overrides onto a raw config mapping.
    Values are parsed as YAML scalars, so `true`, `10` and `[a, b]` keep their types.
    """
    for item in overrides:
        if "=" not in item:
            raise ConfigError(f"Override must look like key=value, got {item!r}")

        key, value = item.split("=", 1)
        _set_dotted(raw, key.strip(), yaml.safe_load(value))

    return raw
