"""HealClaw - automatic healing of CI/CD failures."""

__version__ = "0.1.0"
