"""Verification probes: independent checks that an action's effect is live.

A probe inspects the real world (usually the public page) and reports whether
the change an action made is observable. Probes raise
``VerificationProbeError`` when the page cannot be reached; the engine treats
that like an unconfirmed result and schedules a recheck.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
import json
import logging
from typing import Any, Callable, Protocol

import httpx
from bs4 import BeautifulSoup

from agent.errors import VerificationProbeError
from agent.payloads import PatchSpec, PayloadModel
from agent.policy import ExecutionPolicy
from time_utils import utc_now

logger = logging.getLogger(__name__)

_USER_AGENT = "SEOAgentVerifier/1.0"


@dataclass(frozen=True)
class CheckDetail:
    """Result of one individual check within a verification attempt."""

    check_type: str
    target_url: str | None
    expected: Any = None
    actual: Any = None
    passed: bool = False
    error: str | None = None
    checked_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "check_type": self.check_type,
            "target_url": self.target_url,
            "expected": self.expected,
            "actual": self.actual,
            "passed": self.passed,
            "error": self.error,
            "checked_at": self.checked_at.isoformat(),
        }


@dataclass(frozen=True)
class ProbeResult:
    """Aggregate outcome of a probe run."""

    confirmed: bool
    checks: tuple[CheckDetail, ...] = ()
    summary: str = ""


@dataclass(frozen=True)
class ProbeContext:
    """Snapshot of the action and run being verified."""

    action_id: str
    owner: str
    site_url: str
    action_type: str
    title: str
    payload: PayloadModel
    policy: ExecutionPolicy
    run_id: str
    run_status: str
    run_outcome: dict[str, Any] | None
    attempt: int
    timeout_seconds: float


class VerificationProbe(Protocol):
    """Checks whether an action's intended effect is observable."""

    def probe(self, context: ProbeContext) -> ProbeResult:
        """Inspect the world and report whether the effect is confirmed."""
        ...


class HttpPageFetcher:
    """Fetch public pages over HTTP for inspection."""

    def __init__(
        self,
        *,
        client_factory: Callable[[float], httpx.Client] | None = None,
    ) -> None:
        self._client_factory = client_factory or _default_client

    def fetch(self, url: str, *, timeout: float) -> str:
        """Return the page body, raising VerificationProbeError on any failure."""
        try:
            with self._client_factory(timeout) as client:
                response = client.get(url)
        except httpx.HTTPError as exc:
            raise VerificationProbeError(f"Failed to fetch {url}: {exc}") from exc
        if response.status_code >= 400:
            raise VerificationProbeError(
                f"Failed to fetch {url}: HTTP {response.status_code}",
                {"status_code": response.status_code},
            )
        return response.text


def _default_client(timeout: float) -> httpx.Client:
    return httpx.Client(
        timeout=timeout,
        follow_redirects=True,
        headers={"User-Agent": _USER_AGENT},
    )


class PatchProbe:
    """Verify page-level patches (meta tags, alt text, canonical, JSON-LD)."""

    def __init__(self, fetcher: HttpPageFetcher) -> None:
        self._fetcher = fetcher

    def probe(self, context: ProbeContext) -> ProbeResult:
        patches: list[PatchSpec] = list(getattr(context.payload, "patches", None) or [])
        if not patches:
            return ProbeResult(confirmed=False, summary="No patches to verify")
        by_url: OrderedDict[str, list[PatchSpec]] = OrderedDict()
        for patch in patches:
            by_url.setdefault(patch.target_url, []).append(patch)

        checks: list[CheckDetail] = []
        for url, url_patches in by_url.items():
            html = self._fetcher.fetch(url, timeout=context.timeout_seconds)
            soup = BeautifulSoup(html, "html.parser")
            for patch in url_patches:
                checks.append(check_patch(soup, patch))

        passed = sum(1 for check in checks if check.passed)
        return ProbeResult(
            confirmed=passed == len(checks),
            checks=tuple(checks),
            summary=f"{passed}/{len(checks)} patch checks passed",
        )


class PublicationProbe:
    """Verify that published content is publicly reachable."""

    def __init__(self, fetcher: HttpPageFetcher) -> None:
        self._fetcher = fetcher

    def probe(self, context: ProbeContext) -> ProbeResult:
        output = (context.run_outcome or {}).get("output") or {}
        url = getattr(context.payload, "public_url", None) or output.get("public_url")
        if not url:
            return ProbeResult(confirmed=False, summary="No public URL reported yet")
        html = self._fetcher.fetch(url, timeout=context.timeout_seconds)
        soup = BeautifulSoup(html, "html.parser")
        title = soup.title.get_text(strip=True) if soup.title else None
        check = CheckDetail(
            check_type="publication_live",
            target_url=url,
            expected="reachable",
            actual=title or "reachable",
            passed=True,
        )
        return ProbeResult(confirmed=True, checks=(check,), summary=f"Published at {url}")


class RunOutcomeProbe:
    """Confirm from the recorded run alone; used for dry runs and unknown types."""

    def probe(self, context: ProbeContext) -> ProbeResult:
        succeeded = context.run_status == "succeeded"
        check = CheckDetail(
            check_type="run_outcome",
            target_url=None,
            expected="succeeded",
            actual=context.run_status,
            passed=succeeded,
        )
        summary = "Run succeeded" if succeeded else f"Run status is {context.run_status}"
        return ProbeResult(confirmed=succeeded, checks=(check,), summary=summary)


def check_patch(soup: BeautifulSoup, patch: PatchSpec) -> CheckDetail:
    """Check one patch against a parsed page."""
    if patch.change_type == "upsert_meta":
        actual = _meta_value(soup, patch)
        return _compare("meta_tag", patch, actual)
    if patch.change_type == "add_alt_text":
        actual = _alt_text(soup, patch)
        return _compare("alt_text", patch, actual)
    if patch.change_type == "set_canonical":
        link = soup.find("link", rel="canonical")
        actual = link.get("href") if link is not None else None
        return _compare("canonical", patch, actual, normalize=_normalize_url)
    return _check_schema(soup, patch)


def _meta_value(soup: BeautifulSoup, patch: PatchSpec) -> str | None:
    if patch.selector:
        element = soup.select_one(patch.selector)
    elif patch.element_type == "title":
        return soup.title.get_text(strip=True) if soup.title else None
    else:
        name = patch.element_type or "description"
        element = soup.find("meta", attrs={"name": name}) or soup.find(
            "meta", attrs={"property": name}
        )
    if element is None:
        return None
    if element.name == "meta":
        return element.get("content")
    return element.get_text(strip=True)


def _alt_text(soup: BeautifulSoup, patch: PatchSpec) -> str | None:
    if patch.selector:
        element = soup.select_one(patch.selector)
        return element.get("alt") if element is not None else None
    for image in soup.find_all("img"):
        if image.get("alt") == patch.after_value:
            return image.get("alt")
    return None


def _check_schema(soup: BeautifulSoup, patch: PatchSpec) -> CheckDetail:
    blocks = soup.find_all("script", attrs={"type": "application/ld+json"})
    parsed: list[Any] = []
    errors: list[str] = []
    for block in blocks:
        try:
            parsed.append(json.loads(block.string or ""))
        except json.JSONDecodeError as exc:
            errors.append(str(exc))
    expected_type = _expected_schema_type(patch.after_value)
    found_types = [item.get("@type") for item in parsed if isinstance(item, dict)]
    if expected_type is None:
        passed = bool(parsed)
    else:
        passed = expected_type in found_types
    return CheckDetail(
        check_type="schema_markup",
        target_url=patch.target_url,
        expected=expected_type or "valid JSON-LD",
        actual=found_types or None,
        passed=passed,
        error="; ".join(errors) or None,
    )


def _expected_schema_type(after_value: str | None) -> str | None:
    if not after_value:
        return None
    try:
        data = json.loads(after_value)
    except json.JSONDecodeError:
        return None
    return data.get("@type") if isinstance(data, dict) else None


def _compare(
    check_type: str,
    patch: PatchSpec,
    actual: str | None,
    *,
    normalize: Callable[[str], str] | None = None,
) -> CheckDetail:
    expected = patch.after_value
    norm = normalize or (lambda value: value.strip())
    passed = actual is not None and expected is not None and norm(actual) == norm(expected)
    return CheckDetail(
        check_type=check_type,
        target_url=patch.target_url,
        expected=expected,
        actual=actual,
        passed=passed,
        error=None if actual is not None else "element not found",
    )


def _normalize_url(value: str) -> str:
    return value.strip().rstrip("/")


@dataclass(frozen=True)
class _ProbeRegistration:
    probe: VerificationProbe
    handles_dry_run: bool


class ProbeRegistry:
    """Map action types to probes, with a fallback for unknown types and dry runs."""

    def __init__(self, *, default_probe: VerificationProbe | None = None) -> None:
        self._probes: dict[str, _ProbeRegistration] = {}
        self._default_probe = default_probe or RunOutcomeProbe()

    def register(
        self,
        action_type: str,
        probe: VerificationProbe,
        *,
        handles_dry_run: bool = False,
    ) -> None:
        """Register the probe for an action type, replacing any previous one."""
        self._probes[action_type] = _ProbeRegistration(probe, handles_dry_run)

    def resolve(self, action_type: str, policy: ExecutionPolicy) -> VerificationProbe:
        """Return the probe for an action type under the given policy."""
        registration = self._probes.get(action_type)
        if registration is None:
            return self._default_probe
        if policy.is_dry_run and not registration.handles_dry_run:
            return self._default_probe
        return registration.probe


def build_default_probes(fetcher: HttpPageFetcher | None = None) -> ProbeRegistry:
    """Return a registry with the built-in HTTP probes."""
    page_fetcher = fetcher or HttpPageFetcher()
    registry = ProbeRegistry()
    patch_probe = PatchProbe(page_fetcher)
    registry.register("technical_seo_fix", patch_probe)
    registry.register("schema_injection", patch_probe)
    registry.register("cms_publishing", PublicationProbe(page_fetcher))
    return registry
