from __future__ import annotations

import pytest

from agents.requirement_analyzer import (
    DEFAULT_URL,
    CapabilityRule,
    TaskRequirementAnalyzer,
    create_default_requirement_analyzer,
    extract_url,
    infer_doctype,
)
from core.models import CapabilityKind


@pytest.fixture()
def analyzer() -> TaskRequirementAnalyzer:
    return create_default_requirement_analyzer()


def test_task_without_keywords_needs_no_capabilities(analyzer: TaskRequirementAnalyzer) -> None:
    assert analyzer.analyze("Deploy to production") == []


def test_scrape_uses_url_from_task(analyzer: TaskRequirementAnalyzer) -> None:
    requests = analyzer.analyze("scrape https://example.org/report")

    assert len(requests) == 1
    assert requests[0].kind == CapabilityKind.BROWSER_SCRAPE
    assert requests[0].params == {
        "url": "https://example.org/report",
        "selectors": [{"selector": "body"}],
    }


def test_capture_falls_back_to_default_url(analyzer: TaskRequirementAnalyzer) -> None:
    requests = analyzer.analyze("Take a SCREENSHOT of the dashboard")

    assert [r.kind for r in requests] == [CapabilityKind.BROWSER_CAPTURE]
    assert requests[0].params == {"url": DEFAULT_URL, "options": {"full_page": True}}


def test_every_matching_rule_yields_a_request_in_table_order(
    analyzer: TaskRequirementAnalyzer,
) -> None:
    task = "save invoice data, then automate the workflow and extract https://shop.test/a"
    requests = analyzer.analyze(task)

    assert [r.kind for r in requests] == [
        CapabilityKind.WORKFLOW,
        CapabilityKind.BROWSER_SCRAPE,
        CapabilityKind.STRUCTURED_STORE,
        CapabilityKind.BUSINESS_DATA,
    ]
    workflow, scrape, store, business = requests
    assert workflow.params == {"workflow_id": "default", "data": {"task": task}}
    assert scrape.params["url"] == "https://shop.test/a"
    assert store.params["table"] == "task_results"
    assert store.params["data"]["task"] == task
    assert "timestamp" in store.params["data"]
    assert business.params == {"doctype": "Sales Invoice", "filters": {}}


def test_requests_are_not_deduplicated(analyzer: TaskRequirementAnalyzer) -> None:
    requests = analyzer.analyze("capture and scrape the sales page")

    assert [r.kind for r in requests] == [
        CapabilityKind.BROWSER_CAPTURE,
        CapabilityKind.BROWSER_SCRAPE,
        CapabilityKind.BUSINESS_DATA,
    ]


@pytest.mark.parametrize(
    ("task", "doctype"),
    [
        ("list customer accounts", "Customer"),
        ("unpaid invoice report", "Sales Invoice"),
        ("weekly sales numbers", "Sales Order"),
        ("stock item levels", "Item"),
        ("anything else", "Customer"),
        ("customer invoice", "Customer"),
    ],
)
def test_infer_doctype(task: str, doctype: str) -> None:
    assert infer_doctype(task) == doctype


def test_extract_url_takes_first_match() -> None:
    assert extract_url("see http://a.test/x and https://b.test/y") == "http://a.test/x"
    assert extract_url("no links here") == DEFAULT_URL


def test_custom_rule_table() -> None:
    rule = CapabilityRule(
        name="notify",
        keywords=("page",),
        kind=CapabilityKind.WORKFLOW,
        build_params=lambda task: {"workflow_id": "pager", "data": {"task": task}},
    )
    analyzer = TaskRequirementAnalyzer(rules=(rule,))

    requests = analyzer.analyze("Page the on-call engineer")

    assert analyzer.rules == (rule,)
    assert requests[0].params["workflow_id"] == "pager"
    assert analyzer.analyze("save the database") == []
