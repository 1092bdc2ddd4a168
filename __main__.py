import pulumi
from config import load_config
from gcpclassic import GCPLookup, GCPResourceBuilder
from plan import PlanResolver, RunContext, UnresolvedReferenceError


def main():
    stack_config = pulumi.Config()

    # Load YAML configuration.
    config = load_config(stack_config.get("configFile") or "config.yaml")

    suffix = stack_config.get("nameSuffix")
    context = RunContext.create(suffix)
    if suffix is None:
        pulumi.log.warn(
            f"No nameSuffix configured; generated '{context.suffix}'. "
            f"Run 'pulumi config set nameSuffix {context.suffix}' to keep names stable across updates."
        )

    try:
        plan = PlanResolver(config, context, GCPLookup()).resolve()
    except UnresolvedReferenceError as e:
        pulumi.log.error(f"Cannot reuse {e.kind} '{e.name}': {e}")
        raise

    builder = GCPResourceBuilder(plan, config)
    try:
        builder.build()
    except Exception as e:
        pulumi.log.error(f"Failed during resource build: {e}")
        raise

    for name, value in builder.exports().items():
        pulumi.export(name, value)

if __name__ == "__main__":
    main()
