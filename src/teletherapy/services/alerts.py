"""Operational alerting hook."""

import logging
from dataclasses import dataclass, field
from typing import Protocol


class AlertSink(Protocol):
    """Destination for operational alerts."""

    def critical(self, title: str, details: dict[str, object]) -> None:
        """Raise an alert that needs human attention now."""

    def warning(self, title: str, details: dict[str, object]) -> None:
        """Raise an alert that needs follow-up but is not an incident."""


@dataclass
class LoggingAlertSink(AlertSink):
    """Alert sink that writes to the ``teletherapy.alerts`` logger."""

    logger: logging.Logger = field(
        default_factory=lambda: logging.getLogger("teletherapy.alerts")
    )

    def critical(self, title: str, details: dict[str, object]) -> None:
        """Log a critical alert."""
        self.logger.critical(title, extra={"alert": details})

    def warning(self, title: str, details: dict[str, object]) -> None:
        """Log a warning alert."""
        self.logger.warning(title, extra={"alert": details})
