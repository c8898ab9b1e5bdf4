"""
Resolution of the values written in declarations.

Strings may carry ``${var.name}``, ``${var.name[0]}`` and ``${module.name.output}``
references. A mapping with exactly the keys ``if``/``then``/``else`` selects one of
two values. Strings starting with ``ref:`` point at an attribute of another
resource and are left as ``ResourceRef`` markers for the builder.
"""

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Set, Tuple

from errors import ConfigValidationError, ReferenceResolutionError

INTERPOLATION = re.compile(r"(?<!\$)\$\{([^}]*)\}")
REFERENCE = re.compile(
    r"^(?P<kind>var|module)\.(?P<name>[A-Za-z_][\w-]*)"
    r"(?:\.(?P<attr>[A-Za-z_][\w-]*))?"
    r"(?:\[(?P<index>[^\]]*)\])?$"
)
CONDITIONAL_KEYS = {"if", "then", "else"}


@dataclass(frozen=True)
class Scope:
    variables: Mapping[str, Any]
    modules: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)


@dataclass(frozen=True)
class ResourceRef:
    resource: str
    attribute: str = "id"


@dataclass(frozen=True)
class ModuleOutputRef:
    module: str
    output: str


def freeze(value: Any) -> Any:
    """Read-only copy of a resolved value: mappings become proxies, lists become tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(item) for item in value)
    return value


def contains_ref(value: Any) -> bool:
    if isinstance(value, (ResourceRef, ModuleOutputRef)):
        return True
    if isinstance(value, Mapping):
        return any(contains_ref(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_ref(item) for item in value)
    return False


def references(value: Any) -> Set[Tuple[str, str, Optional[str]]]:
    """(kind, name, attr) of every interpolated reference in an unresolved declaration value."""
    found = set()
    if isinstance(value, Mapping):
        for v in value.values():
            found |= references(v)
    elif isinstance(value, (list, tuple)):
        for item in value:
            found |= references(item)
    elif isinstance(value, str):
        for text in INTERPOLATION.findall(value):
            match = REFERENCE.match(text.strip())
            if match:
                found.add(match.group("kind", "name", "attr"))
    return found


def parse_resource_ref(text: str) -> ResourceRef:
    ref_text = text[len("ref:"):]
    if "." in ref_text:
        ref_res, ref_attr = ref_text.split(".", 1)
    else:
        ref_res, ref_attr = ref_text, "id"
    return ResourceRef(ref_res, ref_attr)


def _index(value: Any, raw_index: str, ref: str) -> Any:
    if not isinstance(value, (list, tuple)):
        raise ReferenceResolutionError(f"Cannot index '{ref}': value is not a list")
    try:
        index = int(raw_index)
    except ValueError:
        raise ReferenceResolutionError(f"Invalid index in '{ref}'") from None
    if index < 0 or index >= len(value):
        raise ReferenceResolutionError(
            f"Index {index} out of bounds in '{ref}': list has {len(value)} element(s)"
        )
    return value[index]


def lookup(ref: str, scope: Scope) -> Any:
    """Return the value a single reference such as ``var.cidrs[0]`` points at."""
    match = REFERENCE.match(ref.strip())
    if not match:
        raise ReferenceResolutionError(f"Unsupported reference: '{ref}'")
    kind, name, attr, raw_index = match.group("kind", "name", "attr", "index")

    if kind == "var":
        if attr is not None:
            raise ReferenceResolutionError(f"Unsupported reference: '{ref}'")
        if name not in scope.variables:
            raise ReferenceResolutionError(f"Reference to undeclared variable '{name}'")
        value = scope.variables[name]
    else:
        if attr is None:
            raise ReferenceResolutionError(f"Module reference '{ref}' must name an output")
        if name not in scope.modules:
            raise ReferenceResolutionError(f"Reference to undeclared module '{name}'")
        outputs = scope.modules[name]
        if attr not in outputs:
            raise ReferenceResolutionError(f"Module '{name}' has no output '{attr}'")
        value = outputs[attr]

    if raw_index is not None:
        value = _index(value, raw_index, ref)
    return value


def _render(value: Any, ref: str) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple, Mapping)):
        raise ConfigValidationError(f"Cannot render collection '{ref}' inside a string")
    if isinstance(value, (ResourceRef, ModuleOutputRef)):
        raise ConfigValidationError(f"Cannot render resource attribute '{ref}' inside a string")
    return str(value)


def interpolate(text: str, scope: Scope) -> Any:
    match = INTERPOLATION.fullmatch(text)
    if match:
        return lookup(match.group(1), scope)
    rendered = INTERPOLATION.sub(lambda m: _render(lookup(m.group(1), scope), m.group(1)), text)
    return rendered.replace("$${", "${")


def evaluate_condition(condition: Any, scope: Scope) -> bool:
    if isinstance(condition, dict):
        if len(condition) != 1:
            raise ConfigValidationError(f"Condition must have exactly one operator: {condition}")
        operator, operands = next(iter(condition.items()))
        operands = resolve_value(operands, scope)
        if not isinstance(operands, (list, tuple)) or len(operands) != 2:
            raise ConfigValidationError(f"Operator '{operator}' takes exactly two operands")
        left, right = freeze(operands[0]), freeze(operands[1])
        if operator == "equals":
            return left == right
        if operator == "not_equals":
            return left != right
        if operator == "in":
            if not isinstance(right, (list, tuple)):
                raise ConfigValidationError("Right operand of 'in' must be a list")
            return left in right
        raise ConfigValidationError(f"Unknown condition operator: '{operator}'")

    value = resolve_value(condition, scope)
    if not isinstance(value, bool):
        raise ConfigValidationError(f"Condition must evaluate to a bool, got {value!r}")
    return value


def resolve_value(value: Any, scope: Scope) -> Any:
    if isinstance(value, dict):
        if set(value) == CONDITIONAL_KEYS:
            branch = "then" if evaluate_condition(value["if"], scope) else "else"
            return resolve_value(value[branch], scope)
        return {k: resolve_value(v, scope) for k, v in value.items()}
    elif isinstance(value, list):
        return [resolve_value(item, scope) for item in value]
    elif isinstance(value, str):
        if value.startswith("ref:"):
            return parse_resource_ref(value)
        return interpolate(value, scope)
    else:
        return value


def resolve_args(args: Dict[str, Any], scope: Scope) -> Dict[str, Any]:
    return {key: resolve_value(value, scope) for key, value in args.items()}
