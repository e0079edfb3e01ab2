"""Cluster API infrastructure controller for Freebox virtual machines."""

__version__ = "0.1.0"
