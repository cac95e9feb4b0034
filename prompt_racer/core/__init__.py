"""
Core modules for Prompt Racer.

This package contains the model registry, race results, the credit
gate and the race orchestrator.
"""
