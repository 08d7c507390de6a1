"""APRS station toolkit: SQLite store and message log, Bluetooth TNC discovery, self-signed TLS and webhooks."""

__version__ = "0.1.0"

__all__ = ["records", "store", "messages", "tnc", "tlscert", "webhook_match", "webhook"]