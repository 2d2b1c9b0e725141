"""Pulsar pushers and shared-subscription consumers over a caller-supplied client."""