"""ORBCOMM reefer telemetry ingestion, presence tracking and live fan-out."""

__version__ = "0.3.0"
