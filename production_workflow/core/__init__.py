"""Workflow engine: stage transitions, task generation, assignment and automation."""
