"""Producers and consumers for beanstalkd, Kafka and Pulsar behind one queue interface."""

__version__ = "0.1.0"