"""Time-boxed trial subscriptions."""
