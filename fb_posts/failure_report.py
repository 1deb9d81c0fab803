from __future__ import annotations

from collections import Counter
from typing import Any, Mapping, Sequence

from .errors import BlockNamespace
from .storage import FailedRequestRecord

UNCLASSIFIED = "unclassified"

_RECOMMENDATIONS: dict[str, list[str]] = {
    BlockNamespace.LOGIN.value: [
        "These posts are gated behind a login wall; check they are public.",
        "Enable sessions.persist_cookies only with cookies of an account allowed to see them.",
    ],
    BlockNamespace.CAPTCHA.value: [
        "Use the RESIDENTIAL proxy group; datacenter addresses get challenged quickly.",
        "Lower crawler.max_concurrency to reduce request rate per proxy.",
    ],
    BlockNamespace.MOBILE_META.value: [
        "The server kept returning an unexpected mobile layout; check devices.mobile presets.",
        "Increase extraction.mobile_marker_timeout_ms on slow proxies.",
    ],
    BlockNamespace.INTERNAL.value: [
        "The platform reported internal errors; rerun later to resume.",
    ],
    BlockNamespace.THRESHOLD.value: [
        "Rate thresholds were hit; lower crawler.max_concurrency or add proxies.",
    ],
    BlockNamespace.MISSING_CONTENT.value: [
        "The post content region never appeared; the post may be deleted or the layout changed.",
        "Increase extraction.content_timeout_ms on slow proxies.",
    ],
    UNCLASSIFIED: [
        "Unclassified failures point to a defect; inspect request_failed events in run.log.",
    ],
}


def build_failure_report(
    failed: Sequence[FailedRequestRecord],
    *,
    handled: int,
    records: int,
    pending_videos: int = 0,
) -> dict[str, Any]:
    """
    Summarize permanently failed requests.

    Severity is "error" when any failure is unclassified (a real defect), "info" when every
    failure is block-classified (an expected outcome), "ok" when nothing failed.
    """
    by_namespace: Counter[str] = Counter((f.namespace or UNCLASSIFIED) for f in failed)
    by_label: Counter[str] = Counter(f.label for f in failed)

    if not failed:
        severity = "ok"
        summary = f"All requests succeeded ({handled} handled, {records} records)."
    elif by_namespace.get(UNCLASSIFIED):
        severity = "error"
        summary = (
            f"{by_namespace[UNCLASSIFIED]} request(s) failed with unclassified errors "
            f"({len(failed)} failed in total, {records} records)."
        )
    else:
        severity = "info"
        summary = (
            f"{len(failed)} request(s) were blocked until their retries ran out "
            f"({records} records)."
        )

    details: dict[str, Any] = {
        "handled": int(handled),
        "records": int(records),
        "failed": len(failed),
        "pending_videos": int(pending_videos),
        "by_namespace": dict(sorted(by_namespace.items())),
        "by_label": dict(sorted(by_label.items())),
    }

    recommendations: list[str] = []
    for namespace, _ in by_namespace.most_common():
        recommendations.extend(_RECOMMENDATIONS.get(namespace, []))

    if pending_videos:
        recommendations.append(
            f"{pending_videos} record(s) still carry a pending video link; rerun to resume them."
        )

    return {
        "severity": severity,
        "summary": summary,
        "details": details,
        "recommendations": recommendations,
    }


def format_failure_report(report: Mapping[str, Any]) -> str:
    severity = str(report.get("severity") or "").strip() or "unknown"
    summary = str(report.get("summary") or "").strip() or f"Run finished ({severity})."

    lines: list[str] = [summary]
    by_ns = (report.get("details") or {}).get("by_namespace")
    if isinstance(by_ns, dict) and by_ns:
        lines.append("Failures by namespace:")
        for ns, n in by_ns.items():
            lines.append(f"- {ns}: {n}")

    recs = report.get("recommendations")
    if isinstance(recs, list) and recs:
        lines.append("Recommendations:")
        for r in recs:
            t = str(r or "").strip()
            if t:
                lines.append(f"- {t}")

    return "\n".join(lines)
