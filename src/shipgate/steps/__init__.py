from shipgate.steps.base import PipelineStep
from shipgate.steps.custom import CustomStep
from shipgate.steps.performance import PerformanceStep
from shipgate.steps.review import ReviewStep
from shipgate.steps.security import SecurityStep
from shipgate.steps.testing import TestStep

__all__ = [
    "CustomStep",
    "PerformanceStep",
    "PipelineStep",
    "ReviewStep",
    "SecurityStep",
    "TestStep",
]
