from .logging import (
    StructuredFormatter,
    TextFormatter,
    WorkflowLogger,
    setup_workflow_logging,
    stage_logging,
)

__all__ = [
    "StructuredFormatter",
    "TextFormatter",
    "WorkflowLogger",
    "setup_workflow_logging",
    "stage_logging",
]
