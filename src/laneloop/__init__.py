"""Two-lane action orchestrator with runtime guard-rails."""

__version__ = "0.1.0"
