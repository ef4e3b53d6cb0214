"""Workflow engine: registry, model, execution, persistence and the manager.

Submodules are imported directly (``nibble.engine.executor`` etc.) so that
adapters can depend on the exception and registry modules without pulling
in the executor.
"""
