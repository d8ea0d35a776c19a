"""Import drivers: per-format state graphs and parsers."""

from typing import Optional

from importflow.drivers.auto import AutoDriver
from importflow.drivers.base import Driver
from importflow.drivers.csv_driver import CsvDriver
from importflow.drivers.wordpress import WordPressDriver
from importflow.errors import UnknownDriverError
from importflow.records.models import ImportRecord
from importflow.sources.resolver import SourceResolver

# Driver registry mapping record driver tags to driver classes
DRIVER_REGISTRY: dict[str, type[Driver]] = {
    "auto": AutoDriver,
    "csv": CsvDriver,
    "wordpress_xml": WordPressDriver,
}


def get_driver(name: str) -> Driver:
    """
    Factory function to get a driver by name.

    Args:
        name: Driver tag as stored on the import record

    Returns:
        Driver instance

    Raises:
        UnknownDriverError: If name is not registered
    """
    if name not in DRIVER_REGISTRY:
        available = ", ".join(DRIVER_REGISTRY.keys())
        raise UnknownDriverError(f"Unknown driver: {name}. Available: {available}")
    return DRIVER_REGISTRY[name]()


def list_drivers() -> list[str]:
    return list(DRIVER_REGISTRY.keys())


def detect_driver(record: ImportRecord, resolver: SourceResolver) -> Optional[Driver]:
    """
    Highest-priority concrete driver that accepts the record's source.

    Raises:
        SourceError: If the source cannot be resolved
    """
    candidates = sorted(
        (cls() for name, cls in DRIVER_REGISTRY.items() if name != "auto"),
        key=lambda driver: driver.priority,
        reverse=True,
    )
    for driver in candidates:
        if driver.can_handle(record, resolver):
            return driver
    return None


__all__ = [
    "Driver",
    "AutoDriver",
    "CsvDriver",
    "WordPressDriver",
    "DRIVER_REGISTRY",
    "get_driver",
    "list_drivers",
    "detect_driver",
]
