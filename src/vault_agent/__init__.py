"""Autonomous yield vault control loop."""

__version__ = "0.1.0"
