from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod

from shipgate.models import Feature, PipelineStepConfig, PipelineStepResult


class CodeReviewIntegration(ABC):
    """External code-review service tried before the model path of a custom step.

    Implementations raise ``IntegrationError`` when the service cannot produce a review.
    """

    name = "code-review"

    @abstractmethod
    async def submit_review(
        self,
        feature: Feature,
        step_config: PipelineStepConfig,
        signal: asyncio.Event | None = None,
    ) -> PipelineStepResult:
        """Run a review and return it as a step result."""
