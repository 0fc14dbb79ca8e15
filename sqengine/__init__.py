"""Multiplexing SNMP query engine that speaks msgpack to its TCP clients."""

__version__ = "0.1.0"

__all__ = ["__version__"]