from __future__ import annotations

from typing import Any

from shipgate.executors.base import ExecutorResponse
from shipgate.issues import (
    extract_json_block,
    extract_numbered_issues,
    infer_status,
    issue_from_payload,
)
from shipgate.models import Feature, PipelineStepResult
from shipgate.step_configs import ReviewConfig
from shipgate.steps.base import PipelineStep, as_dict_list, feature_details

FOCUS_DESCRIPTIONS = {
    "quality": "code quality (readability, maintainability, complexity)",
    "standards": "coding standards compliance (naming conventions, structure, patterns)",
    "bugs": "potential bugs and error handling issues",
    "best-practices": "best practices and design patterns",
}

FOCUS_CHECKLISTS = {
    "quality": """
Code Quality Review:
- Check for code readability and maintainability
- Identify overly complex code (high cyclomatic complexity)
- Look for code duplication and redundancy
- Verify proper error handling patterns
- Check for appropriate use of data structures and algorithms
""",
    "standards": """
Standards Compliance:
- Verify naming conventions (variables, functions, classes, files)
- Check code structure and organization
- Ensure consistent formatting and indentation
- Validate proper use of language features
- Check for adherence to project-specific standards
""",
    "bugs": """
Bug Detection:
- Look for null/undefined reference errors
- Check for race conditions and concurrency issues
- Identify potential memory leaks
- Verify proper input validation and sanitization
- Check for off-by-one errors and boundary conditions
- Look for unhandled exceptions and rejected promises
""",
    "best-practices": """
Best Practices:
- Verify SOLID principles adherence
- Check for appropriate design patterns usage
- Ensure proper separation of concerns
- Look for adequate documentation and comments
- Verify proper testing approach
- Check for security best practices
""",
}

OUTPUT_FORMAT = """
## Output Format

If no issues found:
[REVIEW_PASSED]
Code review completed successfully. No issues found.

If issues found:
[REVIEW_FAILED]
Issues found:
1. [Issue description] (file:line)
   Severity: [low/medium/high]
   Suggestion: [How to fix]

2. [Additional issue]...

Limit the issues to the {max_issues} most important ones.
"""


class ReviewStep(PipelineStep[ReviewConfig]):
    step_type = "review"
    label = "Review"
    config_type = ReviewConfig

    def build_prompt(self, feature: Feature, config: ReviewConfig) -> str:
        focus_areas = ", ".join(FOCUS_DESCRIPTIONS.get(area, area) for area in config.focus)
        parts = [
            f"Please review the implemented feature for the following areas: {focus_areas}.\n",
            feature_details(feature),
        ]
        parts.extend(FOCUS_CHECKLISTS[area] for area in config.focus if area in FOCUS_CHECKLISTS)
        if config.exclude_patterns:
            parts.append(
                "\nExclude the following files/patterns from review:\n"
                + "\n".join(config.exclude_patterns)
                + "\n"
            )
        if not config.include_tests:
            parts.append(
                "\nExclude test files from the review unless they contain production code.\n"
            )
        parts.append(OUTPUT_FORMAT.format(max_issues=config.max_issues))
        return "".join(parts)

    def parse_result(self, output: str) -> dict[str, Any]:
        """Structured issues come from a JSON block when the reply has one.

        Otherwise numbered lines are read, and only from a failing reply.
        """
        parsed = extract_json_block(output, source="review")
        if parsed is not None and isinstance(parsed.get("issues"), list):
            return {
                "issues": [issue_from_payload(item) for item in as_dict_list(parsed["issues"])],
                "suggestions": as_dict_list(parsed.get("suggestions")),
                "metrics": parsed.get("metrics") if isinstance(parsed.get("metrics"), dict) else {},
                "summary": str(parsed.get("summary") or ""),
            }
        failed = infer_status(output) == "failed"
        return {
            "issues": extract_numbered_issues(output) if failed else [],
            "suggestions": [],
            "metrics": {},
            "summary": "",
        }

    def build_result(
        self, response: ExecutorResponse, parsed: dict[str, Any], config: ReviewConfig
    ) -> PipelineStepResult:
        issues = parsed["issues"][: max(config.max_issues, 0)]
        return PipelineStepResult(
            status=infer_status(response.output),
            output=response.output,
            issues=issues,
            metadata={
                "suggestions": parsed["suggestions"],
                "metrics": parsed["metrics"],
                "issuesCount": len(issues),
            },
        )
