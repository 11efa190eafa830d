"""
Workspace orchestration engine.

Leaves first: core (names, labels, validation), presets, route_table,
metadata (label codec), runtime (Docker adapter), streaming, supervisor,
backends, deployment, lifecycle (the controller).
"""
