import os
import yaml
from pydantic import ValidationError, BaseModel, ConfigDict
from yaml.nodes import ScalarNode, MappingNode
from typing import Dict, Any, Optional, Type, TypeVar
from errors import ConfigError
from logger import logger


class StrictBaseModel(BaseModel, frozen=True):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class LineNumberLoader(yaml.SafeLoader):
    def construct_mapping(self, node: MappingNode, deep: bool = False) -> Any:
        mapping = {}
        for key_node, value_node in node.value:
            key = self.construct_object(key_node, deep=deep)  # type: ignore
            value = self.construct_object(value_node, deep=deep)  # type: ignore
            mapping[key] = value
            if isinstance(key_node, ScalarNode):
                mapping[f"_line_{key}"] = key_node.start_mark.line + 1
        return mapping


def extract_field_lines(data: Dict[str, Any], prefix: str = "") -> Dict[str, int]:
    field_lines = {}
    for key, value in data.items():
        if str(key).startswith("_line_"):
            continue
        full_key = f"{prefix}.{key}" if prefix else str(key)
        line_key = f"_line_{key}"
        if line_key in data:
            field_lines[full_key] = data[line_key]
        if isinstance(value, dict):
            field_lines.update(extract_field_lines(value, prefix=full_key))
    return field_lines


def clean_yaml_data(data: Any) -> Any:
    if isinstance(data, list):
        return [clean_yaml_data(v) for v in data]
    if not isinstance(data, dict):
        return data
    return {k: clean_yaml_data(v) for k, v in data.items() if not str(k).startswith("_line_")}


T = TypeVar('T', bound=BaseModel)


def validate(cls: Type[T], data: Dict[str, Any], field_lines: Optional[Dict[str, int]] = None, source: str = "") -> T:
    try:
        return cls.model_validate(data)
    except ValidationError as e:
        msgs = []
        for err in e.errors():
            field = ".".join(str(x) for x in err['loc'])
            line = (field_lines or {}).get(field)
            where = f" (line {line})" if line is not None else ""
            msgs.append(f"field '{field}': {err['msg']}{where}")
        prefix = f"{source}: " if source else ""
        raise ConfigError(prefix + "; ".join(msgs)) from e


def load(path: str, cls: Type[T], section: Optional[str] = None) -> T:
    """Loads `cls` from a YAML file, optionally from one top-level `section`.

    A missing file or section yields the model defaults.
    """
    if not os.path.exists(path):
        logger.debug(f"Config file {path} does not exist, using defaults")
        return cls()

    try:
        with open(path) as f:
            yaml_str = f.read()
        parsed = yaml.load(yaml_str, Loader=LineNumberLoader) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"failed to read config {path}: {e}") from e

    if not isinstance(parsed, dict):
        raise ConfigError(f"{path}: expected a mapping at the top level")

    if section is not None:
        parsed = parsed.get(section) or {}
        if not isinstance(parsed, dict):
            raise ConfigError(f"{path}: expected a mapping under '{section}'")

    field_lines = extract_field_lines(parsed)
    return validate(cls, clean_yaml_data(parsed), field_lines, source=path)
