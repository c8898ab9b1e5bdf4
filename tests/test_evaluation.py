import pytest

from config import load_config
from errors import ConfigValidationError, ReferenceResolutionError
from evaluation import SENSITIVE_PLACEHOLDER, evaluate, render_plan
from expressions import ModuleOutputRef, ResourceRef

REGIONS = ["us-east-1", "us-west-1", "eu-central-1"]


def _resource(evaluation, name):
    return next(r for r in evaluation.resources if r.name == name)


@pytest.mark.parametrize("region", REGIONS)
def test_allowed_regions_evaluate(stack_config, region):
    evaluation = evaluate(stack_config, {"region": region})
    assert evaluation.provider.args == {"region": region}
    assert evaluation.region == region


@pytest.mark.parametrize("region", ["us-east-2", "ap-southeast-1", "eu-central-2"])
def test_other_regions_block_the_pass(stack_config, region):
    with pytest.raises(ConfigValidationError, match="Region must be one of"):
        evaluate(stack_config, {"region": region})


@pytest.mark.parametrize(
    "region,instance_type",
    [("us-west-1", "t2.micro"), ("us-east-1", "t2.small"), ("eu-central-1", "t2.small")],
)
def test_instance_type_follows_region(stack_config, region, instance_type):
    instance = _resource(evaluate(stack_config, {"region": region}), "example")
    assert instance.args["instance_type"] == instance_type


@pytest.mark.parametrize("region", REGIONS)
def test_availability_zone_is_region_plus_a(stack_config, region):
    instance = _resource(evaluate(stack_config, {"region": region}), "example")
    assert instance.args["availability_zone"] == region + "a"


def test_defaults(stack_config):
    evaluation = evaluate(stack_config)
    assert evaluation.variables["region"] == "us-east-1"
    assert evaluation.variables["resource_name"] == "prod-resource"
    assert evaluation.variables["cidrs"][0] == "10.0.0.0/24"
    assert evaluation.name_prefix == "prod"

    instance = _resource(evaluation, "example")
    assert instance.args["ami"] == "ami-0c55b159cbfafe1f0"
    assert instance.args["tags"] == {"Name": "prod-resource"}
    assert _resource(evaluation, "main").args["cidr_block"] == "10.0.0.0/24"


def test_resource_name_follows_prefix(stack_config):
    evaluation = evaluate(stack_config, {"resource_prefix": "staging"})
    assert evaluation.variables["resource_name"] == "staging-resource"
    assert _resource(evaluation, "example").args["tags"] == {"Name": "staging-resource"}


def test_vpc_uses_first_cidr(stack_config):
    evaluation = evaluate(stack_config, {"cidrs": ["172.16.0.0/16"]})
    assert _resource(evaluation, "main").args["cidr_block"] == "172.16.0.0/16"


def test_empty_cidrs_fail_reference_resolution(stack_config):
    with pytest.raises(ReferenceResolutionError, match="out of bounds"):
        evaluate(stack_config, {"cidrs": []})


def test_module_receives_resolved_region(stack_config):
    evaluation = evaluate(stack_config, {"region": "eu-central-1"})
    regional = evaluation.modules["regional"]
    assert regional.name == "regional"
    assert regional.variables["region"] == "eu-central-1"
    assert regional.output_values() == {"region": "eu-central-1", "availability_zone": "eu-central-1a"}
    assert regional.provider is None


def test_output_is_region_and_sensitive(stack_config):
    evaluation = evaluate(stack_config, {"region": "us-west-1"})
    output = evaluation.outputs["region"]
    assert output.value == "us-west-1"
    assert output.sensitive is True


def test_plan_redacts_sensitive_output(stack_config):
    plan = render_plan(evaluate(stack_config, {"region": "us-west-1"}))
    assert plan["outputs"]["region"] == {"value": SENSITIVE_PLACEHOLDER, "sensitive": True}
    assert plan["provider"] == {"name": "aws", "args": {"region": "us-west-1"}}
    assert plan["modules"]["regional"]["outputs"]["region"]["value"] == "us-west-1"
    assert [r["name"] for r in plan["resources"]] == ["example", "main"]


def test_evaluation_is_immutable(stack_config):
    evaluation = evaluate(stack_config)
    with pytest.raises(AttributeError):
        evaluation.name = "other"
    with pytest.raises(TypeError):
        evaluation.outputs["extra"] = None


def test_nested_values_are_read_only(stack_config):
    evaluation = evaluate(stack_config)
    assert evaluation.variables["cidrs"] == ("10.0.0.0/24", "10.0.1.0/24")
    with pytest.raises(AttributeError):
        evaluation.variables["cidrs"].append("10.0.2.0/24")

    instance = _resource(evaluation, "example")
    with pytest.raises(TypeError):
        instance.args["ami"] = "ami-other"
    with pytest.raises(TypeError):
        instance.args["tags"]["Name"] = "other"
    with pytest.raises(TypeError):
        evaluation.provider.args["region"] = "us-west-1"
    with pytest.raises(TypeError):
        evaluation.tags["ManagedBy"] = "other"

    assert evaluate(stack_config).variables["cidrs"] == ("10.0.0.0/24", "10.0.1.0/24")


def test_sensitive_variables_are_redacted(write_config):
    path = write_config(
        """
        variables:
          token:
            default: abc
            sensitive: true
          name:
            default: app
        """
    )
    plan = render_plan(evaluate(load_config(path)))
    assert plan["variables"] == {"token": SENSITIVE_PLACEHOLDER, "name": "app"}
    assert "provider" not in plan


def test_module_outputs_pointing_at_resources(write_config):
    write_config(
        """
        variables:
          cidr: {}
        resources:
          - name: subnet
            type: ec2.Subnet
            args:
              cidr_block: "${var.cidr}"
              vpc_id: "ref:vpc"
        outputs:
          subnet_id:
            value: "ref:subnet"
        """,
        "modules/net/config.yaml",
    )
    path = write_config(
        """
        variables:
          cidr:
            default: 10.0.0.0/24
        modules:
          - name: net
            source: modules/net
            inputs:
              cidr: "${var.cidr}"
        outputs:
          subnet:
            value: "${module.net.subnet_id}"
        """
    )
    evaluation = evaluate(load_config(path))
    net = evaluation.modules["net"]
    assert net.outputs["subnet_id"].value == ResourceRef("subnet", "id")
    assert net.resources[0].args["vpc_id"] == ResourceRef("vpc", "id")
    assert evaluation.outputs["subnet"].value == ModuleOutputRef("net", "subnet_id")
    assert render_plan(evaluation)["outputs"]["subnet"]["value"] == "module.net.subnet_id"


def test_module_missing_required_input(write_config):
    write_config("variables:\n  region: {}\n", "modules/m/config.yaml")
    path = write_config("modules:\n  - name: m\n    source: modules/m\n")
    with pytest.raises(ConfigValidationError, match="required variable 'region'"):
        evaluate(load_config(path))


def test_module_unknown_input(write_config):
    write_config("variables: {}\n", "modules/m/config.yaml")
    path = write_config("modules:\n  - name: m\n    source: modules/m\n    inputs:\n      zone: a\n")
    with pytest.raises(ConfigValidationError, match="undeclared variables: zone"):
        evaluate(load_config(path))


def test_module_cycle_is_rejected(write_config):
    write_config("modules:\n  - name: back\n    source: ..\n", "child/config.yaml")
    path = write_config("modules:\n  - name: child\n    source: child\n")
    with pytest.raises(ConfigValidationError, match="includes itself"):
        evaluate(load_config(path))


def test_unresolved_reference_in_resource(write_config):
    path = write_config(
        """
        resources:
          - name: vpc
            type: ec2.Vpc
            args:
              cidr_block: "${var.cidr}"
        """
    )
    with pytest.raises(ReferenceResolutionError, match="undeclared variable 'cidr'"):
        evaluate(load_config(path))


def test_resource_args_read_module_outputs(write_config):
    write_config(
        """
        variables:
          region: {}
        outputs:
          zone:
            value: "${var.region}b"
        """,
        "modules/m/config.yaml",
    )
    path = write_config(
        """
        resources:
          - name: subnet
            type: ec2.Subnet
            args:
              availability_zone: "${module.m.zone}"
              tags:
                Zone: "zone-${module.m.zone}"
        modules:
          - name: m
            source: modules/m
            inputs:
              region: eu-central-1
        """
    )
    subnet = evaluate(load_config(path)).resources[0]
    assert subnet.args["availability_zone"] == "eu-central-1b"
    assert subnet.args["tags"] == {"Zone": "zone-eu-central-1b"}


def test_modules_are_evaluated_in_dependency_order(write_config):
    write_config(
        """
        variables:
          region: {}
        outputs:
          zone:
            value: "${var.region}a"
        """,
        "modules/zone/config.yaml",
    )
    write_config(
        """
        variables:
          zone: {}
        outputs:
          label:
            value: "subnet-${var.zone}"
        """,
        "modules/label/config.yaml",
    )
    path = write_config(
        """
        modules:
          - name: label
            source: modules/label
            inputs:
              zone: "${module.zone.zone}"
          - name: zone
            source: modules/zone
            inputs:
              region: us-east-1
        """
    )
    evaluation = evaluate(load_config(path))
    assert list(evaluation.modules) == ["label", "zone"]
    assert evaluation.modules["label"].outputs["label"].value == "subnet-us-east-1a"


def test_module_input_cycle_is_rejected(write_config):
    write_config("variables:\n  x: {}\noutputs:\n  y:\n    value: \"${var.x}\"\n", "modules/m/config.yaml")
    path = write_config(
        """
        modules:
          - name: a
            source: modules/m
            inputs:
              x: "${module.b.y}"
          - name: b
            source: modules/m
            inputs:
              x: "${module.a.y}"
        """
    )
    with pytest.raises(ConfigValidationError, match="cycle"):
        evaluate(load_config(path))


def test_nested_resource_refs_stay_scoped_to_their_module(write_config):
    write_config(
        """
        resources:
          - name: subnet
            type: ec2.Subnet
        outputs:
          ids:
            value: ["ref:subnet", "static"]
          by_name:
            value:
              primary: "ref:subnet.arn"
        """,
        "modules/net/config.yaml",
    )
    path = write_config(
        """
        resources:
          - name: subnet
            type: ec2.Subnet
        modules:
          - name: net
            source: modules/net
        outputs:
          ids:
            value: "${module.net.ids}"
          by_name:
            value: "${module.net.by_name}"
        """
    )
    evaluation = evaluate(load_config(path))
    assert evaluation.outputs["ids"].value == ModuleOutputRef("net", "ids")
    assert evaluation.outputs["by_name"].value == ModuleOutputRef("net", "by_name")


def test_outputs_reading_sensitive_values_are_sensitive(write_config):
    write_config(
        """
        variables:
          password:
            default: hunter2
            sensitive: true
        outputs:
          password:
            value: "${var.password}"
            sensitive: true
          user:
            value: admin
        """,
        "modules/db/config.yaml",
    )
    path = write_config(
        """
        variables:
          token:
            default: abc
            sensitive: true
        modules:
          - name: db
            source: modules/db
        outputs:
          dsn:
            value: "admin:${module.db.password}@db"
          user:
            value: "${module.db.user}"
          token:
            value: "${var.token}"
        """
    )
    evaluation = evaluate(load_config(path))
    assert evaluation.outputs["dsn"].sensitive is True
    assert evaluation.outputs["dsn"].value == "admin:hunter2@db"
    assert evaluation.outputs["token"].sensitive is True
    assert evaluation.outputs["user"].sensitive is False

    outputs = render_plan(evaluation)["outputs"]
    assert outputs["dsn"]["value"] == SENSITIVE_PLACEHOLDER
    assert outputs["token"]["value"] == SENSITIVE_PLACEHOLDER
    assert outputs["user"]["value"] == "admin"
