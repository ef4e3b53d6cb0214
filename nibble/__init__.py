"""Nibble: adapter catalog and workflow engine mixing LLM, HTTP and on-chain steps."""

__version__ = "0.1.0"
