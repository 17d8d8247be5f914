"""aitri: spec-driven workflow orchestration."""

__version__ = "0.1.0"
