"""Agent runtime building blocks: cron scheduling, sessions, skills, sandboxing and telemetry."""

__version__ = "0.1.0"