from .workflow_config import (
    ConfigurationError,
    CorrelationConfig,
    DataConfig,
    ModelConfig,
    MonitoringConfig,
    ValidationConfig,
    WorkflowConfig,
    load_workflow_config,
)

__all__ = [
    "ConfigurationError",
    "CorrelationConfig",
    "DataConfig",
    "ModelConfig",
    "MonitoringConfig",
    "ValidationConfig",
    "WorkflowConfig",
    "load_workflow_config",
]
