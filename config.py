"""
This module defines the data structures for the stack declarations and the
YAML loader that produces them. Records are structurally validated here; values
are typed, validated and resolved later by the variables and evaluation modules.
"""

import os
import re
import yaml
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from errors import ConfigValidationError

CONFIG_FILE_NAME = "config.yaml"

# distinguishes an omitted default from an explicit `default: null`
NO_DEFAULT = object()

TOP_LEVEL_KEYS = {"provider", "variables", "name_prefix", "tags", "resources", "modules", "outputs"}

TYPE_PATTERN = re.compile(r"^(?:(?P<scalar>string|number|bool|any)|(?P<collection>list|map)\((?P<element>string|number|bool|any)\))$")
RESOURCE_TYPE_PATTERN = re.compile(r"^[a-z][a-z0-9_]*\.[A-Z][A-Za-z0-9]*$")


@dataclass(frozen=True)
class Validation:
    allowed: Optional[List[Any]] = None
    pattern: Optional[str] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class Variable:
    name: str
    type: str = "string"
    default: Any = NO_DEFAULT
    description: Optional[str] = None
    validation: Optional[Validation] = None
    sensitive: bool = False

    @property
    def required(self) -> bool:
        return self.default is NO_DEFAULT


@dataclass(frozen=True)
class Provider:
    name: str
    args: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Resource:
    name: str
    type: str
    args: Mapping[str, Any] = field(default_factory=dict)
    custom_name: Optional[str] = None


@dataclass(frozen=True)
class ModuleCall:
    name: str
    source: str
    inputs: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StackOutput:
    name: str
    value: Any
    sensitive: bool = False
    description: Optional[str] = None


@dataclass(frozen=True)
class Config:
    path: str
    provider: Optional[Provider]
    variables: List[Variable]
    resources: List[Resource]
    modules: List[ModuleCall]
    outputs: List[StackOutput]
    tags: Dict[str, Any] = field(default_factory=dict)
    name_prefix: Optional[str] = None


def parse_type(type_expr: str):
    """Split a type expression into (collection, element); collection is None for scalars."""
    match = TYPE_PATTERN.match(str(type_expr).replace(" ", ""))
    if not match:
        raise ConfigValidationError(f"Unknown variable type '{type_expr}'")
    if match.group("scalar"):
        return None, match.group("scalar")
    return match.group("collection"), match.group("element")


def _require_mapping(value: Any, what: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigValidationError(f"{what} must be a mapping, got {type(value).__name__}")
    return value


def _require_list(value: Any, what: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigValidationError(f"{what} must be a list, got {type(value).__name__}")
    return value


def _check_unique(names: List[str], what: str) -> None:
    seen = set()
    for name in names:
        if name in seen:
            raise ConfigValidationError(f"Duplicate {what} name: {name}")
        seen.add(name)


def _parse_validation(name: str, data: Any) -> Optional[Validation]:
    if data is None:
        return None
    data = _require_mapping(data, f"Validation of variable '{name}'")
    allowed = data.get("allowed")
    if allowed is not None and not isinstance(allowed, list):
        raise ConfigValidationError(f"Validation 'allowed' of variable '{name}' must be a list")
    pattern = data.get("pattern")
    if pattern is not None:
        try:
            re.compile(pattern)
        except re.error as e:
            raise ConfigValidationError(f"Invalid validation pattern for variable '{name}': {e}") from e
    if allowed is None and pattern is None:
        raise ConfigValidationError(f"Validation of variable '{name}' needs 'allowed' or 'pattern'")
    return Validation(allowed=allowed, pattern=pattern, error_message=data.get("error_message"))


def _parse_variables(data: Any) -> List[Variable]:
    variables = []
    for name, spec in _require_mapping(data, "variables").items():
        spec = _require_mapping(spec, f"Variable '{name}'")
        var_type = spec.get("type", "string")
        parse_type(var_type)
        variables.append(
            Variable(
                name=name,
                type=var_type,
                default=spec.get("default", NO_DEFAULT),
                description=spec.get("description"),
                validation=_parse_validation(name, spec.get("validation")),
                sensitive=bool(spec.get("sensitive", False)),
            )
        )
    return variables


def _parse_resources(data: Any) -> List[Resource]:
    resources = []
    for index, spec in enumerate(_require_list(data, "resources")):
        spec = _require_mapping(spec, f"Resource #{index}")
        for key in ("name", "type"):
            if not spec.get(key):
                raise ConfigValidationError(f"Resource #{index} is missing required key: {key}")
        if not RESOURCE_TYPE_PATTERN.match(spec["type"]):
            raise ConfigValidationError(
                f"Resource '{spec['name']}' has malformed type '{spec['type']}', expected '<module>.<Class>'"
            )
        resources.append(
            Resource(
                name=spec["name"],
                type=spec["type"],
                args=_require_mapping(spec.get("args"), f"Args of resource '{spec['name']}'"),
                custom_name=spec.get("custom_name"),
            )
        )
    _check_unique([r.name for r in resources], "resource")
    return resources


def _parse_modules(data: Any, base_dir: str) -> List[ModuleCall]:
    modules = []
    for index, spec in enumerate(_require_list(data, "modules")):
        spec = _require_mapping(spec, f"Module #{index}")
        for key in ("name", "source"):
            if not spec.get(key):
                raise ConfigValidationError(f"Module #{index} is missing required key: {key}")
        modules.append(
            ModuleCall(
                name=spec["name"],
                source=os.path.normpath(os.path.join(base_dir, spec["source"])),
                inputs=_require_mapping(spec.get("inputs"), f"Inputs of module '{spec['name']}'"),
            )
        )
    _check_unique([m.name for m in modules], "module")
    return modules


def _parse_outputs(data: Any) -> List[StackOutput]:
    outputs = []
    for name, spec in _require_mapping(data, "outputs").items():
        spec = _require_mapping(spec, f"Output '{name}'")
        if "value" not in spec:
            raise ConfigValidationError(f"Output '{name}' is missing required key: value")
        outputs.append(
            StackOutput(
                name=name,
                value=spec["value"],
                sensitive=bool(spec.get("sensitive", False)),
                description=spec.get("description"),
            )
        )
    return outputs


def _parse_provider(data: Any) -> Optional[Provider]:
    if data is None:
        return None
    data = dict(_require_mapping(data, "provider"))
    name = data.pop("name", "aws")
    return Provider(name=name, args=data)


def load_config(path: str) -> Config:
    """Load and structurally validate a declaration file (or a directory holding config.yaml)."""
    if os.path.isdir(path):
        path = os.path.join(path, CONFIG_FILE_NAME)
    try:
        with open(path, "r") as file:
            config_data = yaml.safe_load(file)
    except FileNotFoundError as e:
        raise ConfigValidationError(f"Configuration file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigValidationError(f"Invalid YAML in {path}: {e}") from e

    config_data = _require_mapping(config_data, f"Configuration in {path}")
    unknown = set(config_data) - TOP_LEVEL_KEYS
    if unknown:
        raise ConfigValidationError(f"Unknown configuration keys in {path}: {', '.join(sorted(unknown))}")

    base_dir = os.path.dirname(os.path.abspath(path))
    return Config(
        path=path,
        provider=_parse_provider(config_data.get("provider")),
        variables=_parse_variables(config_data.get("variables")),
        resources=_parse_resources(config_data.get("resources")),
        modules=_parse_modules(config_data.get("modules"), base_dir),
        outputs=_parse_outputs(config_data.get("outputs")),
        tags=_require_mapping(config_data.get("tags"), "tags"),
        name_prefix=config_data.get("name_prefix"),
    )
