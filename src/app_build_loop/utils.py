from __future__ import annotations

import re

from .models import FeatureStatus, InvocationReport


def slugify_name(name: str, *, max_length: int = 64) -> str:
    slug = re.sub(r"[^a-zA-Z0-9]+", "-", name.lower()).strip("-")
    slug = re.sub(r"-{2,}", "-", slug)
    return slug[:max_length].rstrip("-") or "checkpoint"


def checkpoint_label(sequence: int, feature: str) -> str:
    return f"checkpoint {sequence:04d}: {feature} complete"


def render_report_text(report: InvocationReport) -> str:
    """Operator-facing ``key=value`` summary of an invocation."""
    lines = [f"outcome={report.outcome.value}", f"record_revision={report.record_revision}"]
    if report.fatal_error:
        lines.append(f"fatal_error={report.fatal_error}")
    for feature in report.features:
        line = f"feature={feature.name} status={feature.status.value}"
        if feature.status == FeatureStatus.BLOCKED and feature.failing_rule:
            line += f" failing_rule={feature.failing_rule}"
        if feature.detail:
            line += f" detail={feature.detail}"
        lines.append(line)
    for checkpoint in report.checkpoints:
        lines.append(f"checkpoint={checkpoint.sequence} ref={checkpoint.ref}")
    if report.pruned:
        lines.append("pruned=" + ",".join(report.pruned))
    return "\n".join(lines)
