"""Unit tests for HTTP verification probes."""

from __future__ import annotations

import json

import httpx
import pytest

from agent.errors import VerificationProbeError
from agent.payloads import parse_payload
from agent.policy import resolve_policy
from agent.probes import (
    HttpPageFetcher,
    ProbeContext,
    PublicationProbe,
    RunOutcomeProbe,
    build_default_probes,
)

PAGE_URL = "https://example.com/pricing"

PAGE_HTML = """
<html>
  <head>
    <title>Pricing</title>
    <meta name="description" content="Simple, transparent pricing">
    <link rel="canonical" href="https://example.com/pricing/">
    <script type="application/ld+json">{"@context": "https://schema.org", "@type": "Product"}</script>
  </head>
  <body>
    <img id="hero" src="/hero.png" alt="Team planning board">
    <img id="logo" src="/logo.png">
  </body>
</html>
"""


def _fetcher(pages: dict[str, tuple[int, str]]) -> HttpPageFetcher:
    def handle(request: httpx.Request) -> httpx.Response:
        status, body = pages.get(str(request.url), (404, "missing"))
        return httpx.Response(status, text=body)

    transport = httpx.MockTransport(handle)
    return HttpPageFetcher(client_factory=lambda timeout: httpx.Client(transport=transport, timeout=timeout))


def _context(action_type: str, payload: dict, *, run_status: str = "succeeded", run_outcome=None) -> ProbeContext:
    return ProbeContext(
        action_id="action-1",
        owner="user",
        site_url="https://example.com",
        action_type=action_type,
        title="Fix pricing page",
        payload=parse_payload(action_type, payload),
        policy=resolve_policy(action_type, {"environment": "PRODUCTION"}),
        run_id="run-1",
        run_status=run_status,
        run_outcome=run_outcome,
        attempt=1,
        timeout_seconds=5,
    )


def _patch(change_type: str, after_value: str, **extra) -> dict:
    return {"change_type": change_type, "target_url": PAGE_URL, "after_value": after_value, **extra}


def test_patch_probe_confirms_applied_changes() -> None:
    """Ensure meta, alt text, canonical and schema patches are detected on the page."""
    registry = build_default_probes(_fetcher({PAGE_URL: (200, PAGE_HTML)}))
    context = _context(
        "technical_seo_fix",
        {
            "patches": [
                _patch("upsert_meta", "Simple, transparent pricing"),
                _patch("add_alt_text", "Team planning board", selector="#hero"),
                _patch("set_canonical", "https://example.com/pricing"),
                _patch("inject_schema", json.dumps({"@type": "Product"})),
            ]
        },
    )

    result = registry.resolve("technical_seo_fix", context.policy).probe(context)

    assert result.confirmed is True
    assert [check.check_type for check in result.checks] == [
        "meta_tag",
        "alt_text",
        "canonical",
        "schema_markup",
    ]
    assert result.summary == "4/4 patch checks passed"


def test_patch_probe_reports_missing_changes() -> None:
    """Ensure a missing alt attribute leaves the result unconfirmed."""
    registry = build_default_probes(_fetcher({PAGE_URL: (200, PAGE_HTML)}))
    context = _context(
        "technical_seo_fix",
        {
            "patches": [
                _patch("upsert_meta", "Simple, transparent pricing"),
                _patch("add_alt_text", "Company logo", selector="#logo"),
            ]
        },
    )

    result = registry.resolve("technical_seo_fix", context.policy).probe(context)

    assert result.confirmed is False
    assert [check.passed for check in result.checks] == [True, False]
    assert result.checks[1].actual is None
    assert result.summary == "1/2 patch checks passed"


def test_fetch_errors_raise_probe_error() -> None:
    """Ensure HTTP errors surface as verification probe errors."""
    fetcher = _fetcher({PAGE_URL: (503, "unavailable")})

    with pytest.raises(VerificationProbeError, match="HTTP 503"):
        fetcher.fetch(PAGE_URL, timeout=5)


def test_publication_probe_uses_reported_public_url() -> None:
    """Ensure published content is checked at the URL the run reported."""
    url = "https://example.com/blog/core-web-vitals"
    probe = PublicationProbe(_fetcher({url: (200, "<html><title>Core Web Vitals</title></html>")}))
    context = _context("cms_publishing", {}, run_outcome={"output": {"public_url": url}})

    result = probe.probe(context)

    assert result.confirmed is True
    assert result.checks[0].actual == "Core Web Vitals"


def test_publication_probe_without_url_is_unconfirmed() -> None:
    """Ensure a missing public URL is not treated as success."""
    probe = PublicationProbe(_fetcher({}))

    for run_outcome in ({"output": {}}, {"output": None}, None):
        result = probe.probe(_context("cms_publishing", {}, run_outcome=run_outcome))

        assert result.confirmed is False
        assert result.summary == "No public URL reported yet"


def test_dry_run_resolves_to_run_outcome_probe() -> None:
    """Ensure dry runs and unknown types are confirmed from the run record alone."""
    registry = build_default_probes(_fetcher({}))
    dry_run = resolve_policy("technical_seo_fix")

    assert isinstance(registry.resolve("technical_seo_fix", dry_run), RunOutcomeProbe)
    assert isinstance(registry.resolve("custom_audit", dry_run), RunOutcomeProbe)
    failed = RunOutcomeProbe().probe(_context("content_generation", {"topic": "x"}, run_status="failed"))
    assert failed.confirmed is False
