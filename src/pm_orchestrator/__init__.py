"""Project-manager task orchestrator: durable queue, planning, retries and clarification."""

__version__ = "0.1.0"
