import json
import pulumi
from builder import AWSResourceBuilder
from config import load_config
from errors import ConfigurationError
from evaluation import evaluate, render_plan
from variables import stack_overrides

CONFIG_PATH = "config.yaml"


def main():
    # Load declarations and resolve them against the stack configuration
    config = load_config(CONFIG_PATH)

    try:
        evaluation = evaluate(config, stack_overrides(config.variables))
    except ConfigurationError as e:
        pulumi.log.error(f"Invalid configuration in {CONFIG_PATH}: {e}")
        raise

    pulumi.log.debug(f"Resolved plan: {json.dumps(render_plan(evaluation), sort_keys=True)}")

    try:
        builder = AWSResourceBuilder(evaluation)
        builder.build()
    except Exception as e:
        pulumi.log.error(f"Failed during resource build: {e}")
        raise

    for name, value in builder.outputs().items():
        pulumi.export(name, value)


if __name__ == "__main__":
    main()
