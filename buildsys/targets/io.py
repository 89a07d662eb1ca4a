"""Loading of resolved build targets from YAML/JSON files.

The manifest tooling writes one resolved target per file; this module
reads such a file and validates it into a typed target.
"""

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import TypeAdapter

from buildsys.targets.schema import BuildTarget

_TARGET_ADAPTER: TypeAdapter[Any] = TypeAdapter(BuildTarget)


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the content is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the content is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def parse_target_data(data: dict[str, Any]) -> BuildTarget:
    """Validate target data, dispatching on its ``kind`` field.

    Raises:
        pydantic.ValidationError: If data does not match any target schema.
    """
    return _TARGET_ADAPTER.validate_python(data)


def load_target(path: Path) -> BuildTarget:
    """Load a target from a ``.yaml``/``.yml`` or ``.json`` file.

    Args:
        path: Path to the target file.

    Returns:
        Validated target of the kind named in the file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the extension is unsupported or the content is invalid.
        pydantic.ValidationError: If data does not match any target schema.
    """
    suffix = path.suffix.lower()
    if suffix in (".yaml", ".yml"):
        data = load_yaml(path)
    elif suffix == ".json":
        data = load_json(path)
    else:
        raise ValueError(f"Unsupported target file extension: {path.suffix}")
    return parse_target_data(data)


def dump_target(target: BuildTarget) -> str:
    """Render a target as YAML."""
    return yaml.safe_dump(
        target.model_dump(mode="json"),
        sort_keys=False,
        default_flow_style=False,
    )


__all__ = [
    "dump_target",
    "load_json",
    "load_target",
    "load_yaml",
    "parse_target_data",
]
