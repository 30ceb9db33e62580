from __future__ import annotations

from typing import Any

from shipgate.executors.base import ExecutorResponse
from shipgate.issues import NO_ISSUES_PHRASE, extract_json_block, issue_from_payload, marker_status
from shipgate.models import Feature, PipelineStepResult
from shipgate.step_configs import PerformanceConfig
from shipgate.steps.base import PipelineStep, as_dict_list, feature_details

METRIC_CHECKLISTS = {
    "complexity": """
Algorithm Complexity Analysis:
- Identify time complexity of algorithms (O(n), O(n^2), O(log n), etc.)
- Check for nested loops and recursive calls
- Look for N+1 query problems
- Identify potential infinite loops or recursion
- Analyze sorting and searching algorithms
- Check for inefficient data structure usage
""",
    "memory": """
Memory Usage Analysis:
- Check for memory leaks and unreleased resources
- Identify large object allocations
- Look for memory-intensive operations
- Check for proper cleanup and garbage collection
- Analyze memory patterns in loops
- Identify potential stack overflow risks
""",
    "database": """
Database Performance:
- Analyze SQL queries for optimization opportunities
- Check for missing database indexes
- Look for N+1 query patterns
- Identify full table scans
- Check query result caching opportunities
- Analyze transaction usage and locks
""",
    "network": """
Network Performance:
- Check for unnecessary API calls
- Look for request/response payload optimization
- Identify opportunities for batching requests
- Check for proper HTTP caching headers
- Analyze WebSocket usage efficiency
- Look for CDN optimization opportunities
""",
    "bundle": """
Bundle Size Analysis:
- Check for large dependencies and unused imports
- Look for code splitting opportunities
- Analyze asset optimization (images, fonts)
- Check for minification and compression
- Identify tree shaking opportunities
- Look for lazy loading possibilities
""",
    "rendering": """
Rendering Performance:
- Check for unnecessary re-renders
- Look for virtual list implementation
- Analyze CSS performance impacts
- Check for layout thrashing
- Identify animation performance issues
- Look for DOM optimization opportunities
""",
}

THRESHOLD_LABELS = {
    "cyclomaticComplexity": "Maximum cyclomatic complexity",
    "memoryUsage": "Memory usage threshold",
    "responseTime": "Response time threshold",
    "bundleSize": "Bundle size threshold",
}

# Checked in order; the first category with a matching keyword wins.
CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("database", ("database", "query", "queries", "sql", "index", "n+1", "table scan")),
    ("algorithms", ("complexity", "algorithm", "o(n", "nested loop", "recursion", "sort")),
    ("memory", ("memory", "leak", "allocation", "garbage", "heap")),
    ("network", ("network", "request", "api call", "latency", "payload", "http")),
    ("bundle", ("bundle", "unused import", "dependency", "minif", "tree shaking")),
    ("rendering", ("render", "layout", "repaint", "animation", "css", "virtual list")),
)

OUTPUT_FORMAT = """
Start your reply with [PERFORMANCE_PASSED] or [PERFORMANCE_FAILED] on its own line, then
provide your performance analysis in the following JSON format:
{
  "summary": "Brief summary of performance characteristics",
  "issues": [
    {
      "severity": "critical|high|medium|low",
      "category": "complexity|memory|database|network|bundle|rendering",
      "file": "file path",
      "line": line_number,
      "title": "Performance issue title",
      "description": "Detailed description of the issue",
      "impact": "Performance impact explanation",
      "recommendation": "How to optimize",
      "estimatedGain": "Expected performance improvement"
    }
  ],
  "optimizations": [
    {
      "priority": "high|medium|low",
      "type": "algorithm|cache|database|network|code",
      "description": "Optimization opportunity",
      "implementation": "How to implement",
      "effort": "low|medium|high",
      "impact": "Expected impact"
    }
  ],
  "metrics": {
    "cyclomaticComplexity": number,
    "memoryUsageMB": number,
    "databaseQueries": number,
    "networkRequests": number,
    "bundleSizeKB": number
  },
  "performanceScore": number (0-100)
}

If there is nothing to report, say "No issues found".
Focus on identifying real performance bottlenecks that could impact user experience.
"""


def categorize(issue: dict[str, Any]) -> str:
    text = " ".join(
        str(issue.get(key) or "") for key in ("title", "description", "impact")
    ).lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return category
    declared = str(issue.get("category") or "").strip().lower()
    return declared or "general"


class PerformanceStep(PipelineStep[PerformanceConfig]):
    step_type = "performance"
    label = "Performance"
    config_type = PerformanceConfig

    def build_prompt(self, feature: Feature, config: PerformanceConfig) -> str:
        parts = [
            "Perform a comprehensive performance analysis of the implemented feature.\n\n",
            feature_details(feature),
            "\nPerformance Analysis Areas:\n",
        ]
        parts.extend(
            METRIC_CHECKLISTS[metric] for metric in config.metrics if metric in METRIC_CHECKLISTS
        )
        thresholds = [
            f"- {THRESHOLD_LABELS.get(key, key)}: {value}\n"
            for key, value in config.thresholds.items()
            if value
        ]
        if thresholds:
            parts.append("\nPerformance Thresholds:\n" + "".join(thresholds))
        parts.append(OUTPUT_FORMAT)
        if config.enable_profiling:
            parts.append(
                "\nInclude recommendations for performance profiling tools and techniques "
                "that could be used to gather more detailed metrics.\n"
            )
        return "".join(parts)

    def parse_result(self, output: str) -> dict[str, Any]:
        parsed = extract_json_block(output, source="performance")
        if parsed is None:
            return {"found": False, "issues": [], "optimizations": [], "metrics": {}, "score": 0}
        metrics = parsed.get("metrics")
        return {
            "found": True,
            "issues": as_dict_list(parsed.get("issues")),
            "optimizations": as_dict_list(parsed.get("optimizations")),
            "metrics": metrics if isinstance(metrics, dict) else {},
            "score": parsed.get("performanceScore") or 0,
        }

    def build_result(
        self, response: ExecutorResponse, parsed: dict[str, Any], config: PerformanceConfig
    ) -> PipelineStepResult:
        categories = [categorize(item) for item in parsed["issues"]]
        issues = [
            issue_from_payload(
                item,
                summary_keys=("description", "title"),
                severity_keys=("severity", "impact"),
                category=category,
            )
            for item, category in zip(parsed["issues"], categories)
        ]
        status = marker_status(response.output)
        if status is None:
            no_issues = NO_ISSUES_PHRASE in response.output.lower()
            status = "passed" if no_issues or (parsed["found"] and not issues) else "failed"
        return PipelineStepResult(
            status=status,
            output=response.output,
            issues=issues,
            metadata={
                "performanceIssues": parsed["issues"],
                "categories": categories,
                "optimizations": parsed["optimizations"],
                "metrics": parsed["metrics"],
                "performanceScore": parsed["score"],
            },
        )
