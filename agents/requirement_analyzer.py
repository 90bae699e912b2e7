from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.models import CapabilityKind, CapabilityRequest, utc_now


URL_PATTERN = re.compile(r"https?://[^\s]+")
DEFAULT_URL = "https://example.com"
DEFAULT_WORKFLOW_ID = "default"
DEFAULT_STORE_TABLE = "task_results"

# Evaluated in order; the first match wins, "Customer" otherwise.
DOCTYPE_KEYWORDS: Tuple[Tuple[str, str], ...] = (
    ("customer", "Customer"),
    ("invoice", "Sales Invoice"),
    ("sales", "Sales Order"),
    ("item", "Item"),
)
DEFAULT_DOCTYPE = "Customer"


def extract_url(task: str) -> str:
    match = URL_PATTERN.search(task)
    return match.group(0) if match else DEFAULT_URL


def infer_doctype(task: str) -> str:
    text = task.lower()
    for keyword, doctype in DOCTYPE_KEYWORDS:
        if keyword in text:
            return doctype
    return DEFAULT_DOCTYPE


def _workflow_params(task: str) -> Dict[str, Any]:
    return {"workflow_id": DEFAULT_WORKFLOW_ID, "data": {"task": task}}


def _capture_params(task: str) -> Dict[str, Any]:
    return {"url": extract_url(task), "options": {"full_page": True}}


def _scrape_params(task: str) -> Dict[str, Any]:
    return {"url": extract_url(task), "selectors": [{"selector": "body"}]}


def _store_params(task: str) -> Dict[str, Any]:
    return {
        "table": DEFAULT_STORE_TABLE,
        "data": {"task": task, "timestamp": utc_now().isoformat()},
    }


def _business_params(task: str) -> Dict[str, Any]:
    return {"doctype": infer_doctype(task), "filters": {}}


@dataclass(frozen=True)
class CapabilityRule:
    """
    One row of the requirement table.

    Attributes:
        name: Short label used in logs and tests.
        keywords: Lower-case substrings; any one of them triggers the rule.
        kind: Capability requested when the rule matches.
        build_params: Builds the kind-specific parameters from the task text.
    """

    name: str
    keywords: Tuple[str, ...]
    kind: CapabilityKind
    build_params: Callable[[str], Dict[str, Any]]

    def matches(self, text: str) -> bool:
        lowered = text.lower()
        return any(keyword in lowered for keyword in self.keywords)


DEFAULT_RULES: Tuple[CapabilityRule, ...] = (
    CapabilityRule("workflow", ("workflow", "automate"), CapabilityKind.WORKFLOW, _workflow_params),
    CapabilityRule("capture", ("screenshot", "capture"), CapabilityKind.BROWSER_CAPTURE, _capture_params),
    CapabilityRule("scrape", ("scrape", "extract"), CapabilityKind.BROWSER_SCRAPE, _scrape_params),
    CapabilityRule("store", ("store", "save", "database"), CapabilityKind.STRUCTURED_STORE, _store_params),
    CapabilityRule("business", ("customer", "invoice", "sales"), CapabilityKind.BUSINESS_DATA, _business_params),
)


class TaskRequirementAnalyzer:
    """
    Infers which external capabilities a task description needs.

    Every rule is checked independently and in table order, so one description
    can yield several requests. Requests are never deduplicated.
    """

    def __init__(self, rules: Optional[Tuple[CapabilityRule, ...]] = None) -> None:
        self._rules = rules if rules is not None else DEFAULT_RULES

    @property
    def rules(self) -> Tuple[CapabilityRule, ...]:
        return self._rules

    def analyze(self, task_description: str) -> List[CapabilityRequest]:
        return [
            CapabilityRequest(kind=rule.kind, params=rule.build_params(task_description))
            for rule in self._rules
            if rule.matches(task_description)
        ]


def create_default_requirement_analyzer() -> TaskRequirementAnalyzer:
    return TaskRequirementAnalyzer(rules=DEFAULT_RULES)
