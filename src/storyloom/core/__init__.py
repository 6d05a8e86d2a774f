"""Core infrastructure: configuration, logging, stage graphs and the store."""
