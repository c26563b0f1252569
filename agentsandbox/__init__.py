"""Routing proxy, in-memory object store and reconcilers for pools of agent sandboxes."""

__version__ = "0.1.0"