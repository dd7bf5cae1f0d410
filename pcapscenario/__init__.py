"""Follow TCP/TLS sessions in packet captures and build replayable scenarios."""

__version__ = "0.1.0"

__all__ = ["capture", "packets", "scenario", "tls", "transactions"]