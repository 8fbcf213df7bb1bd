"""Runner fleet lifecycle and reconciliation engine.

The engine owns the runner records it creates, drives their process or
container backend, and converges recorded status with what the OS process
table, the container runtime and the hosting service report.
"""
