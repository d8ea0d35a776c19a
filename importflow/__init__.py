"""importflow - multi-step ETL importer driven by per-driver state machines."""

__version__ = "0.1.0"
