"""Workflow definitions, state projection and orchestration."""
