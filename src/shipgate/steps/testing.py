from __future__ import annotations

import math
from typing import Any

from shipgate.executors.base import ExecutorResponse
from shipgate.issues import extract_json_block, issue_from_payload
from shipgate.models import Feature, PipelineStepResult
from shipgate.step_configs import TestConfig
from shipgate.steps.base import PipelineStep, as_dict_list, feature_details

OUTPUT_FORMAT = """
Please analyze the codebase and provide your test analysis in the following JSON format:
{
  "summary": "Brief summary of test coverage and quality",
  "coverage": {
    "overall": number (percentage),
    "statements": number,
    "branches": number,
    "functions": number,
    "lines": number,
    "uncoveredFiles": [
      {"file": "file path", "uncoveredLines": [line_numbers], "coveragePercentage": number}
    ]
  },
  "missingTests": [
    {
      "file": "file path",
      "function": "function name",
      "type": "unit|integration|e2e",
      "priority": "high|medium|low",
      "description": "What test is missing"
    }
  ],
  "issues": [
    {
      "severity": "high|medium|low",
      "category": "coverage|quality|assertion|structure",
      "file": "test file path",
      "line": line_number,
      "description": "Issue description",
      "recommendation": "How to fix"
    }
  ],
  "metrics": {
    "totalTests": number,
    "unitTests": number,
    "integrationTests": number,
    "e2eTests": number,
    "coverage": number,
    "testQualityScore": number (0-100),
    "assertionCount": number
  }
}
"""

QUALITY_CHECKS = """
Test Quality Checks:
- Verify descriptive test names that explain what is being tested
- Check for proper setup and teardown
- Look for test isolation and independence
- Verify meaningful assertions with clear messages
- Check for edge case testing
- Look for proper mocking and stubbing
"""

ASSERTION_CHECKS = """
Assertion Verification:
- Check for sufficient assertions in each test
- Verify assertions test the right behavior
- Check for positive and negative test cases
- Verify boundary condition testing
- Look for error handling verification
"""

INTEGRATION_CHECKS = """
Integration Test Analysis:
- Check for API endpoint testing
- Verify database interaction testing
- Look for external service integration tests
- Verify end-to-end scenarios
"""


def coerce_coverage(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


class TestStep(PipelineStep[TestConfig]):
    __test__ = False

    step_type = "test"
    label = "Test"
    config_type = TestConfig

    def build_prompt(self, feature: Feature, config: TestConfig) -> str:
        parts = [
            "Perform a comprehensive test analysis of the implemented feature.\n\n",
            feature_details(feature),
            "\nTest Analysis Requirements:\n",
            f"- Minimum coverage threshold: {config.coverage_threshold:g}%\n",
            f"- Check test quality: {str(config.check_quality).lower()}\n",
            f"- Verify assertions: {str(config.check_assertions).lower()}\n",
            f"- Include integration tests: {str(config.include_integration).lower()}\n",
        ]
        if config.exclude_patterns:
            parts.append(
                "\nExclude the following files/patterns from coverage analysis:\n"
                + "\n".join(config.exclude_patterns)
                + "\n"
            )
        parts.append(OUTPUT_FORMAT)
        if config.check_quality:
            parts.append(QUALITY_CHECKS)
        if config.check_assertions:
            parts.append(ASSERTION_CHECKS)
        if config.include_integration:
            parts.append(INTEGRATION_CHECKS)
        parts.append(
            "\nFocus on identifying critical gaps in test coverage that could lead to "
            "production issues.\n"
        )
        return "".join(parts)

    def parse_result(self, output: str) -> dict[str, Any]:
        parsed = extract_json_block(output, source="test") or {}
        coverage = parsed.get("coverage")
        metrics = parsed.get("metrics")
        return {
            "coverage": coverage if isinstance(coverage, dict) else {},
            "missing_tests": as_dict_list(parsed.get("missingTests")),
            "issues": as_dict_list(parsed.get("issues")),
            "metrics": metrics if isinstance(metrics, dict) else {},
        }

    @staticmethod
    def measured_coverage(parsed: dict[str, Any]) -> float:
        return coerce_coverage(parsed["metrics"].get("coverage"))

    def build_result(
        self, response: ExecutorResponse, parsed: dict[str, Any], config: TestConfig
    ) -> PipelineStepResult:
        coverage = self.measured_coverage(parsed)
        return PipelineStepResult(
            status="passed" if coverage >= config.coverage_threshold else "failed",
            output=response.output,
            issues=[issue_from_payload(item) for item in parsed["issues"]],
            metadata={
                "coverage": parsed["coverage"],
                "measuredCoverage": coverage,
                "coverageThreshold": config.coverage_threshold,
                "missingTests": parsed["missing_tests"],
                "metrics": parsed["metrics"],
            },
        )
