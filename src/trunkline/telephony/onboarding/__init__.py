"""Per-provider onboarding orchestrators."""
