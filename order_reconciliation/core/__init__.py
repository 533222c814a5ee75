"""
Core order reconciliation logic.

Modules are imported directly (``core.front_door``, ``core.reconciler``...)
since the database store depends on ``core.models``.
"""
