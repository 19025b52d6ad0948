"""
Rally to Azure DevOps Migration Tool

Migrates Rally work items to Azure DevOps Boards with their full hierarchy,
test case links, comments and attachments. Re-runs update what changed and
never create duplicates.
"""

from __future__ import annotations

from .cli import main
from .exceptions import (
    AuthenticationError,
    ConfigurationError,
    GraphExpansionError,
    MigrationError,
    NotFoundError,
    TransientNetworkError,
    ValidationError,
    WorkflowTransitionError,
)
from .field_mapping import FieldMapper, load_mapping_configuration
from .mapping_table import MappingTable
from .models import AllInProject, ControlState, ExplicitIds, MigrationOptions, MigrationProgress
from .orchestrator import MigrationOrchestrator
from .utils import setup_logging

# Package version
__version__ = "0.1.0"

__all__ = [
    "AllInProject",
    "AuthenticationError",
    "ConfigurationError",
    "ControlState",
    "ExplicitIds",
    "FieldMapper",
    "GraphExpansionError",
    "MappingTable",
    "MigrationError",
    "MigrationOptions",
    "MigrationOrchestrator",
    "MigrationProgress",
    "NotFoundError",
    "TransientNetworkError",
    "ValidationError",
    "WorkflowTransitionError",
    "load_mapping_configuration",
    "main",
    "setup_logging",
]
