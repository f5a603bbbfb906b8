"""
Forge Controller

Headless iteration controller for CC-Forge: a build task-sequencer and a
bounded improve loop that drive the `claude` CLI, validate its structured
signals, and keep an auditable run history.
"""

__version__ = "0.1.0"
