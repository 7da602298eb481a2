from .correlation import (
    CorrelationResult,
    correlate,
    correlate_in_database,
    correlation_graph,
    plot_correlation_heatmap,
    plot_correlation_network,
)

__all__ = [
    "CorrelationResult",
    "correlate",
    "correlate_in_database",
    "correlation_graph",
    "plot_correlation_heatmap",
    "plot_correlation_network",
]
