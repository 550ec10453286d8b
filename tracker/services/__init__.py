"""Business logic: tenancy, policy, workflow, baselines and variations."""
