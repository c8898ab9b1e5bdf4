import pulumi
import pulumi_aws as aws
import inspect
import re
from typing import Any, Dict, Mapping, Optional

from errors import ConfigValidationError, ReferenceResolutionError
from evaluation import Evaluation
from expressions import ModuleOutputRef, ResourceRef

MODULE_COMPONENT_TYPE = "stackdecl:index:Module"

AWS_REGION_ABBREVIATIONS = {
    "us-east-1": "use1",
    "us-east-2": "use2",
    "us-west-1": "usw1",
    "us-west-2": "usw2",
    "af-south-1": "afs1",
    "ap-east-1": "ape1",
    "ap-south-1": "aps1",
    "ap-northeast-1": "apne1",
    "ap-northeast-2": "apne2",
    "ap-northeast-3": "apne3",
    "ap-southeast-1": "apse1",
    "ap-southeast-2": "apse2",
    "ca-central-1": "cac1",
    "eu-central-1": "euc1",
    "eu-west-1": "euw1",
    "eu-west-2": "euw2",
    "eu-west-3": "euw3",
    "eu-north-1": "eun1",
    "eu-south-1": "eus1",
    "me-south-1": "mes1",
    "sa-east-1": "sae1",
}


def to_snake_case(name: str) -> str:
    return re.sub(r'(?<!^)(?=[A-Z])', '_', name).lower()


def resolve_refs(value: Any, resources: Dict[str, Any], modules: Dict[str, "ModuleComponent"]) -> Any:
    if isinstance(value, Mapping):
        return {k: resolve_refs(v, resources, modules) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [resolve_refs(item, resources, modules) for item in value]
    elif isinstance(value, ResourceRef):
        if value.resource not in resources:
            raise ReferenceResolutionError(f"Referenced resource '{value.resource}' not found.")
        resource_obj = resources[value.resource]
        attr_val = getattr(resource_obj, to_snake_case(value.attribute), None)
        if attr_val is None:
            raise ReferenceResolutionError(f"Attribute '{value.attribute}' not found on resource '{value.resource}'")
        return attr_val
    elif isinstance(value, ModuleOutputRef):
        if value.module not in modules:
            raise ReferenceResolutionError(f"Referenced module '{value.module}' not found.")
        return modules[value.module].outputs[value.output]
    else:
        return value


def _init_signature(resource_class: type) -> inspect.Signature:
    # generated resource classes take *args/**kwargs in __init__ and spell out their inputs in _internal_init
    return inspect.signature(getattr(resource_class, "_internal_init", resource_class.__init__))


class AWSResourceBuilder:
    def __init__(
        self,
        evaluation: Evaluation,
        provider: Optional[aws.Provider] = None,
        parent: Optional[pulumi.Resource] = None,
        region: Optional[str] = None,
    ):
        self.evaluation = evaluation
        self.provider = provider
        self.parent = parent
        self.region = evaluation.region or region or "us-east-1"
        self.resources: Dict[str, Any] = {}
        self.modules: Dict[str, "ModuleComponent"] = {}

    def get_abbreviation(self, region: str) -> str:
        return AWS_REGION_ABBREVIATIONS.get(region.lower(), region.split("-")[0].lower())

    def generate_resource_name(self, base_name: str) -> str:
        parts = []
        if self.evaluation.name_prefix:
            parts.append(str(self.evaluation.name_prefix).strip())
        parts.append(self.get_abbreviation(self.region))
        if self.parent is not None:
            parts.append(self.evaluation.name)
        parts.append(base_name)
        return "-".join(parts).lower()

    def resolve_args(self, args: Mapping[str, Any]) -> dict:
        return {key: resolve_refs(value, self.resources, self.modules) for key, value in args.items()}

    def _resource_options(self) -> pulumi.ResourceOptions:
        return pulumi.ResourceOptions(provider=self.provider, parent=self.parent)

    def _apply_common_parameters(self, resolved_args: dict, init_sig: inspect.Signature) -> dict:
        if "tags" in init_sig.parameters:
            common_tags = self.resolve_args(self.evaluation.tags)
            if common_tags:
                resolved_args["tags"] = {**common_tags, **(resolved_args.get("tags") or {})}
        else:
            resolved_args.pop("tags", None)
        if "region" in init_sig.parameters:
            if "region" not in resolved_args:
                resolved_args["region"] = self.region
        else:
            resolved_args.pop("region", None)
        return resolved_args

    def build_provider(self) -> Optional[aws.Provider]:
        declared = self.evaluation.provider
        if declared is None:
            return self.provider
        if declared.name != "aws":
            raise ConfigValidationError(f"Unsupported provider '{declared.name}', only 'aws' is available")
        provider_name = self.generate_resource_name("provider")
        self.provider = aws.Provider(provider_name, opts=pulumi.ResourceOptions(parent=self.parent), **self.resolve_args(declared.args))
        pulumi.log.info(f"Created provider: {provider_name} (region {self.region})")
        return self.provider

    def build(self):
        self.build_provider()
        # modules first: resource args may read module outputs
        for module_name, module_evaluation in self.evaluation.modules.items():
            self.modules[module_name] = ModuleComponent(
                self.generate_resource_name(module_name),
                module_evaluation,
                provider=self.provider,
                region=self.region,
                opts=pulumi.ResourceOptions(parent=self.parent),
            )
            pulumi.log.info(f"Instantiated module: {module_name} ({module_evaluation.path})")

        for resource_cfg in self.evaluation.resources:
            name = resource_cfg.name
            module_name, class_name = resource_cfg.type.rsplit(".", 1)
            module = getattr(aws, module_name, None)
            if not module:
                pulumi.log.warn(f"AWS module '{module_name}' not found. Skipping '{name}'.")
                continue
            try:
                ResourceClass = getattr(module, class_name)
            except AttributeError:
                pulumi.log.warn(f"Resource class '{class_name}' not found in module '{module_name}'. Skipping '{name}'.")
                continue
            init_sig = _init_signature(ResourceClass)
            resolved_args = self._apply_common_parameters(self.resolve_args(resource_cfg.args), init_sig)
            pulumi_name = resource_cfg.custom_name or self.generate_resource_name(name)
            pulumi.log.debug(f"Resolved args for '{name}': {sorted(resolved_args)}")
            self.resources[name] = ResourceClass(pulumi_name, opts=self._resource_options(), **resolved_args)
            pulumi.log.info(f"Created resource: {pulumi_name} ({resource_cfg.type})")
        return self

    def outputs(self) -> Dict[str, Any]:
        """Output values with references resolved; sensitive ones are wrapped as Pulumi secrets."""
        values = {}
        for name, output in self.evaluation.outputs.items():
            value = resolve_refs(output.value, self.resources, self.modules)
            values[name] = pulumi.Output.secret(value) if output.sensitive else value
        return values


class ModuleComponent(pulumi.ComponentResource):
    """A nested declaration unit; its resources are children of this component."""

    def __init__(
        self,
        name: str,
        evaluation: Evaluation,
        provider: Optional[aws.Provider] = None,
        region: Optional[str] = None,
        opts: Optional[pulumi.ResourceOptions] = None,
    ):
        super().__init__(MODULE_COMPONENT_TYPE, name, None, opts)
        self.builder = AWSResourceBuilder(evaluation, provider=provider, parent=self, region=region)
        self.builder.build()
        self.outputs = self.builder.outputs()
        self.register_outputs(self.outputs)
