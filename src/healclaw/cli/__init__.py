"""HealClaw CLI."""
