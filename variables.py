import re
import pulumi
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from config import Variable, parse_type
from errors import ConfigValidationError
from expressions import Scope, freeze, resolve_value

TRUE_STRINGS = {"true", "1", "yes"}
FALSE_STRINGS = {"false", "0", "no"}


def _coerce_scalar(name: str, element: str, value: Any) -> Any:
    if element == "any":
        return value
    if element == "string":
        if isinstance(value, (bool, list, tuple, Mapping)) or value is None:
            raise ConfigValidationError(f"Variable '{name}' must be a string, got {value!r}")
        return str(value)
    if element == "number":
        if isinstance(value, bool):
            raise ConfigValidationError(f"Variable '{name}' must be a number, got {value!r}")
        if isinstance(value, (int, float)):
            return value
        if isinstance(value, str):
            try:
                return int(value)
            except ValueError:
                try:
                    return float(value)
                except ValueError:
                    pass
        raise ConfigValidationError(f"Variable '{name}' must be a number, got {value!r}")
    # bool
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in TRUE_STRINGS | FALSE_STRINGS:
        return value.lower() in TRUE_STRINGS
    raise ConfigValidationError(f"Variable '{name}' must be a bool, got {value!r}")


def coerce(variable: Variable, value: Any) -> Any:
    """Check ``value`` against the variable's declared type, converting stack-config strings."""
    collection, element = parse_type(variable.type)
    if collection is None:
        return _coerce_scalar(variable.name, element, value)
    if collection == "list":
        if not isinstance(value, (list, tuple)):
            raise ConfigValidationError(f"Variable '{variable.name}' must be a list, got {value!r}")
        return [_coerce_scalar(variable.name, element, item) for item in value]
    if not isinstance(value, Mapping):
        raise ConfigValidationError(f"Variable '{variable.name}' must be a map, got {value!r}")
    return {str(k): _coerce_scalar(variable.name, element, v) for k, v in value.items()}


def validate(variable: Variable, value: Any) -> None:
    rule = variable.validation
    if rule is None:
        return
    message = rule.error_message or f"Invalid value for variable '{variable.name}'"
    if rule.allowed is not None and value not in rule.allowed:
        allowed = ", ".join(str(v) for v in rule.allowed)
        raise ConfigValidationError(f"{message} (got {value!r}, allowed: {allowed})")
    if rule.pattern is not None and not re.fullmatch(rule.pattern, str(value)):
        raise ConfigValidationError(f"{message} (got {value!r}, must match {rule.pattern})")


def resolve_variables(variables: List[Variable], overrides: Optional[Mapping[str, Any]] = None) -> Mapping[str, Any]:
    """
    Resolve every declared variable in declaration order.

    An override wins over the default. Defaults may interpolate variables declared
    before them. The returned mapping and the collections inside it are read-only.
    """
    overrides = dict(overrides or {})
    declared = {v.name for v in variables}
    undeclared = set(overrides) - declared
    if undeclared:
        raise ConfigValidationError(f"Values given for undeclared variables: {', '.join(sorted(undeclared))}")

    resolved: Dict[str, Any] = {}
    for variable in variables:
        if variable.name in overrides:
            value = overrides[variable.name]
        elif variable.required:
            raise ConfigValidationError(f"No value for required variable '{variable.name}'")
        else:
            value = resolve_value(variable.default, Scope(variables=MappingProxyType(dict(resolved))))
        # an explicit null stays null and skips type and validation checks
        if value is not None:
            value = coerce(variable, value)
            validate(variable, value)
        resolved[variable.name] = freeze(value)
    return MappingProxyType(resolved)


def stack_overrides(variables: List[Variable], config: Optional[pulumi.Config] = None) -> Dict[str, Any]:
    """Read values for declared variables from the Pulumi stack configuration."""
    config = config or pulumi.Config()
    overrides = {}
    for variable in variables:
        collection, _ = parse_type(variable.type)
        if collection is not None or variable.type == "any":
            value = config.get_object(variable.name)
        else:
            value = config.get(variable.name)
        if value is not None:
            pulumi.log.debug(f"Variable '{variable.name}' set from stack configuration")
            overrides[variable.name] = value
    return overrides
