"""Kafka pushers, partition balancers and consumer groups over caller-supplied I/O functions."""