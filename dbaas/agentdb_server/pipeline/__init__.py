"""
Pipelines: dependent operations executed in one actor turn.
"""

from .coordinator import PipelineCoordinator, PipelineStep, StepResult, substitute

__all__ = ["PipelineCoordinator", "PipelineStep", "StepResult", "substitute"]
