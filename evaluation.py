"""
A single provisioning pass over a declaration: variables are validated, every
expression is resolved and nested modules are evaluated with their inputs. The
result is immutable and carries everything the builder needs.
"""

import os
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from config import Config, ModuleCall, Provider, Resource, StackOutput, load_config
from errors import ConfigValidationError
from expressions import (
    ModuleOutputRef,
    ResourceRef,
    Scope,
    contains_ref,
    freeze,
    references,
    resolve_args,
    resolve_value,
)
from variables import resolve_variables

SENSITIVE_PLACEHOLDER = "(sensitive value)"


@dataclass(frozen=True)
class Evaluation:
    name: str
    path: str
    variables: Mapping[str, Any]
    provider: Optional[Provider]
    name_prefix: Optional[str]
    tags: Mapping[str, Any]
    resources: Tuple[Resource, ...]
    modules: Mapping[str, "Evaluation"]
    outputs: Mapping[str, StackOutput]
    sensitive_variables: Tuple[str, ...] = ()

    @property
    def region(self) -> Optional[str]:
        if self.provider is None:
            return None
        return self.provider.args.get("region")

    def output_values(self) -> Dict[str, Any]:
        return {name: output.value for name, output in self.outputs.items()}


def _evaluate_module(call: ModuleCall, scope: Scope, chain: Tuple[str, ...]) -> "Evaluation":
    config = load_config(call.source)
    source_path = os.path.abspath(config.path)
    if source_path in chain:
        raise ConfigValidationError(f"Module '{call.name}' includes itself via {source_path}")
    inputs = resolve_args(call.inputs, scope)
    refs = [key for key, value in inputs.items() if contains_ref(value)]
    if refs:
        raise ConfigValidationError(
            f"Module '{call.name}' inputs cannot reference resources: {', '.join(refs)}"
        )
    return _evaluate(config, inputs, call.name, chain + (source_path,))


def _module_order(calls: List[ModuleCall]) -> List[ModuleCall]:
    """Module calls ordered so that each comes after the modules its inputs read."""
    by_name = {call.name: call for call in calls}
    ordered: List[ModuleCall] = []
    visiting, done = set(), set()

    def visit(call: ModuleCall) -> None:
        if call.name in done:
            return
        if call.name in visiting:
            raise ConfigValidationError(f"Module inputs form a cycle through '{call.name}'")
        visiting.add(call.name)
        for kind, name, _ in sorted(references(call.inputs), key=lambda ref: (ref[0], ref[1])):
            if kind == "module" and name in by_name:
                visit(by_name[name])
        visiting.discard(call.name)
        done.add(call.name)
        ordered.append(call)

    for call in calls:
        visit(call)
    return ordered


def _module_scope(name: str, module: "Evaluation") -> Mapping[str, Any]:
    # values only known once resources exist are resolved by the builder
    return MappingProxyType({
        key: ModuleOutputRef(name, key) if contains_ref(value) else value
        for key, value in module.output_values().items()
    })


def _scope(variables: Mapping[str, Any], modules: Mapping[str, "Evaluation"]) -> Scope:
    return Scope(
        variables=variables,
        modules=MappingProxyType({k: _module_scope(k, m) for k, m in modules.items()}),
    )


def _reads_sensitive(value: Any, sensitive_variables: Tuple[str, ...], modules: Mapping[str, "Evaluation"]) -> bool:
    for kind, name, attr in references(value):
        if kind == "var" and name in sensitive_variables:
            return True
        if kind == "module" and name in modules:
            output = modules[name].outputs.get(attr)
            if output is not None and output.sensitive:
                return True
    return False


def _evaluate(config: Config, overrides: Optional[Mapping[str, Any]], name: str, chain: Tuple[str, ...]) -> Evaluation:
    variables = resolve_variables(config.variables, overrides)
    sensitive_variables = tuple(v.name for v in config.variables if v.sensitive)

    modules: Dict[str, Evaluation] = {}
    for call in _module_order(config.modules):
        modules[call.name] = _evaluate_module(call, _scope(variables, modules), chain)
    scope = _scope(variables, modules)

    provider = None
    if config.provider is not None:
        provider = Provider(name=config.provider.name, args=freeze(resolve_args(config.provider.args, scope)))

    resources = tuple(
        Resource(name=r.name, type=r.type, args=freeze(resolve_args(r.args, scope)), custom_name=r.custom_name)
        for r in config.resources
    )

    outputs = {
        o.name: StackOutput(
            name=o.name,
            value=freeze(resolve_value(o.value, scope)),
            sensitive=o.sensitive or _reads_sensitive(o.value, sensitive_variables, modules),
            description=o.description,
        )
        for o in config.outputs
    }

    name_prefix = resolve_value(config.name_prefix, scope) if config.name_prefix is not None else None

    return Evaluation(
        name=name,
        path=config.path,
        variables=variables,
        provider=provider,
        name_prefix=name_prefix,
        tags=freeze(resolve_args(config.tags, scope)),
        # declaration order, not evaluation order
        modules=MappingProxyType({call.name: modules[call.name] for call in config.modules}),
        resources=resources,
        outputs=MappingProxyType(outputs),
        sensitive_variables=sensitive_variables,
    )


def evaluate(config: Config, overrides: Optional[Mapping[str, Any]] = None, name: str = "root") -> Evaluation:
    """Validate and resolve ``config``; raises a ConfigurationError before anything is provisioned."""
    return _evaluate(config, overrides, name, (os.path.abspath(config.path),))


def _plain(value: Any) -> Any:
    if isinstance(value, ResourceRef):
        return f"ref:{value.resource}.{value.attribute}"
    if isinstance(value, ModuleOutputRef):
        return f"module.{value.module}.{value.output}"
    if isinstance(value, Mapping):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def render_plan(evaluation: Evaluation) -> Dict[str, Any]:
    """Plain-data dump of an evaluation with sensitive values redacted."""
    plan: Dict[str, Any] = {
        "variables": {
            name: SENSITIVE_PLACEHOLDER if name in evaluation.sensitive_variables else _plain(value)
            for name, value in evaluation.variables.items()
        },
        "resources": [
            {"name": r.name, "type": r.type, "args": _plain(r.args)} for r in evaluation.resources
        ],
        "modules": {name: render_plan(module) for name, module in evaluation.modules.items()},
        "outputs": {
            name: {
                "value": SENSITIVE_PLACEHOLDER if output.sensitive else _plain(output.value),
                "sensitive": output.sensitive,
            }
            for name, output in evaluation.outputs.items()
        },
    }
    if evaluation.provider is not None:
        plan["provider"] = {"name": evaluation.provider.name, "args": _plain(evaluation.provider.args)}
    return plan
