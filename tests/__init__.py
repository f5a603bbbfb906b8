"""
Test Suite for Forge Controller

Services (lock, config, signals, archiver, notifier, worker, plan parser)
and both drivers, plus the command-line entry points.
"""
