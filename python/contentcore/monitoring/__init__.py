from .performance_recorder import HealthReport, HealthStatus, PerformanceMetrics, PerformanceRecorder

__all__ = ["HealthReport", "HealthStatus", "PerformanceMetrics", "PerformanceRecorder"]
