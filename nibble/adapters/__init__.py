"""Concrete adapters grouped by capability."""
