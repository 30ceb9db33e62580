from __future__ import annotations

from typing import Any

from shipgate.executors.base import ExecutorResponse
from shipgate.issues import (
    extract_json_block,
    infer_status,
    issue_from_payload,
    marker_status,
    severity_rank,
)
from shipgate.models import Feature, PipelineStepResult
from shipgate.step_configs import SecurityConfig
from shipgate.steps.base import PipelineStep, as_dict_list, feature_details

DEFAULT_CHECKLIST = (
    "OWASP Top 10 vulnerabilities (2021)",
    "Injection flaws (SQL, NoSQL, OS command, LDAP)",
    "Broken authentication and session management",
    "Sensitive data exposure and encryption",
    "XML external entities (XXE)",
    "Broken access control",
    "Security misconfiguration",
    "Cross-site scripting (XSS)",
    "Insecure deserialization",
    "Using components with known vulnerabilities",
    "Insufficient logging and monitoring",
    "Input validation and sanitization",
    "Output encoding and escaping",
    "Authentication and authorization checks",
    "Security headers implementation",
    "CORS configuration",
    "CSRF protection",
    "Secure cookie handling",
    "File upload security",
    "API rate limiting",
    "Error handling and information disclosure",
)

DEPENDENCY_CHECKLIST = (
    "Third-party dependency vulnerabilities",
    "Outdated packages with known CVEs",
    "License compliance issues",
)

OUTPUT_FORMAT = """
Start your reply with [SECURITY_PASSED] or [SECURITY_FAILED] on its own line, then
provide your security review in the following JSON format:
{
  "summary": "Brief summary of security posture",
  "vulnerabilities": [
    {
      "severity": "critical|high|medium|low|info",
      "category": "injection|auth|data|config|xss|access|crypto|dependency|other",
      "cwe": "CWE number if applicable",
      "file": "file path",
      "line": line_number,
      "title": "Vulnerability title",
      "description": "Detailed description of the vulnerability",
      "impact": "Potential impact if exploited",
      "recommendation": "How to fix the vulnerability"
    }
  ],
  "recommendations": [
    {
      "priority": "high|medium|low",
      "type": "preventive|detective|corrective",
      "description": "Security improvement recommendation",
      "implementation": "How to implement"
    }
  ],
  "securityScore": number (0-100),
  "compliance": {
    "owasp": boolean,
    "gdpr": boolean,
    "pci": boolean,
    "hipaa": boolean
  }
}

Focus on finding real security vulnerabilities that could impact the application.
"""


def filter_by_severity(
    vulnerabilities: list[dict[str, Any]], min_severity: str
) -> list[dict[str, Any]]:
    threshold = severity_rank(min_severity)
    return [
        item for item in vulnerabilities if severity_rank(str(item.get("severity"))) >= threshold
    ]


class SecurityStep(PipelineStep[SecurityConfig]):
    step_type = "security"
    label = "Security"
    config_type = SecurityConfig

    def build_prompt(self, feature: Feature, config: SecurityConfig) -> str:
        checklist = list(config.checklist) or list(DEFAULT_CHECKLIST)
        if config.check_dependencies:
            checklist.extend(DEPENDENCY_CHECKLIST)
        parts = [
            "Perform a comprehensive security review of the implemented feature.\n\n",
            feature_details(feature),
            "\nSecurity Review Checklist:\n",
            "".join(f"- {item}\n" for item in checklist),
            f"\nMinimum severity level to report: {config.min_severity}\n",
            OUTPUT_FORMAT,
        ]
        if config.exclude_tests:
            parts.append("\nExclude test files from the security review.\n")
        else:
            parts.append(
                "\nInclude test files in the security review as they might contain "
                "security-related test cases.\n"
            )
        return "".join(parts)

    def parse_result(self, output: str) -> dict[str, Any]:
        parsed = extract_json_block(output, source="security")
        if parsed is None:
            return {"found": False, "vulnerabilities": [], "recommendations": [], "score": 0}
        return {
            "found": True,
            "vulnerabilities": as_dict_list(parsed.get("vulnerabilities")),
            "recommendations": as_dict_list(parsed.get("recommendations")),
            "score": parsed.get("securityScore") or 0,
            "compliance": parsed.get("compliance") or {},
        }

    def build_result(
        self, response: ExecutorResponse, parsed: dict[str, Any], config: SecurityConfig
    ) -> PipelineStepResult:
        vulnerabilities = filter_by_severity(parsed["vulnerabilities"], config.min_severity)
        issues = [
            issue_from_payload(item, summary_keys=("title", "description"))
            for item in vulnerabilities
        ]
        status = marker_status(response.output)
        if status is None:
            if parsed["found"]:
                status = "failed" if vulnerabilities else "passed"
            else:
                status = infer_status(response.output)
        return PipelineStepResult(
            status=status,
            output=response.output,
            issues=issues,
            metadata={
                "vulnerabilities": vulnerabilities,
                "recommendations": parsed["recommendations"],
                "securityScore": parsed["score"],
                "compliance": parsed.get("compliance", {}),
            },
        )
