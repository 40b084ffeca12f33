"""
Production Workflow

Batch and stage workflow engine: workflow templates, stage transitions,
task generation, worker assignment and automation rules.
"""

import importlib.metadata

__version__ = importlib.metadata.version("production-workflow")

from .errors import WorkflowError

__all__ = ["WorkflowError"]
