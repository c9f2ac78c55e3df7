"""Durable background jobs and multi-stage workflows for AI-assisted tasks."""
