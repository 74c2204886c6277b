"""Remote sources for the victims database."""

from victims.services.victims.sources.victims_client import VictimsClient

__all__ = ["VictimsClient"]
