"""Vigil: well-being check-ins and escalation to trusted nominees."""

__version__ = "0.1.0"
