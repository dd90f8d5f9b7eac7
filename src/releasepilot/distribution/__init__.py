"""Store submissions and staged rollout control."""
