"""Pulsar consumer configuration."""

from __future__ import annotations

from dataclasses import dataclass, field

SCHEME = "pulsar://"


def service_url(brokers: list[str]) -> str:
    """The service URL that names every broker in ``brokers``."""
    return SCHEME + ",".join(brokers)


@dataclass
class Conf:
    """Which topic to consume, under which subscription, and how widely."""

    brokers: list[str] = field(default_factory=list)
    topic: str = ""
    subscription_name: str = ""
    conns: int = 1
    processors: int = 8

    def url(self) -> str:
        """The service URL of the configured brokers."""
        return service_url(self.brokers)