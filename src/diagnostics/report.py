"""
Markdown report of a diagnostic run.
"""

from .models import AnomalyRecord, Hypothesis, RunSummary, Ticket


def _format_change(anomaly: AnomalyRecord) -> str:
    if anomaly.delta_pct is None:
        return "n/a"
    return f"{anomaly.delta_pct:+.1f}%"


def render_report(
    run: RunSummary,
    anomalies: list[AnomalyRecord],
    hypotheses: list[Hypothesis],
    tickets: list[Ticket],
) -> str:
    """Render a run summary with its anomalies, hypotheses and tickets"""
    lines = [
        f"# Diagnostics report: {run.site_id} ({run.run_date.isoformat()})",
        "",
        f"- Run: `{run.run_id}`",
        f"- Status: **{run.status.value}**",
        f"- Anomalies: {run.anomaly_count}",
        f"- Tickets: {run.tickets_created} created, {run.tickets_refreshed} refreshed",
    ]
    if run.failed_sources:
        lines.append(f"- Failed sources: {', '.join(run.failed_sources)}")
    if run.degraded_message:
        lines.append(f"- Note: {run.degraded_message}")
    if run.error:
        lines.append(f"- Error: {run.error}")

    lines += ["", "## Anomalies", ""]
    if anomalies:
        lines += [
            "| Metric | Severity | Direction | z | Change | Current | Baseline |",
            "|---|---|---|---|---|---|---|",
        ]
        for a in sorted(anomalies, key=lambda a: (-a.severity.weight, a.qualified_key)):
            lines.append(
                f"| {a.qualified_key} | {a.severity.value} | {a.direction.value} | "
                f"{a.z_score:.2f} | {_format_change(a)} | {a.current_value:.2f} | {a.baseline_mean:.2f} |"
            )
    else:
        lines.append("No metric deviated from its baseline.")

    lines += ["", "## Hypotheses", ""]
    for h in hypotheses:
        flag = " (degraded)" if h.degraded else ""
        lines.append(f"{h.rank}. **{h.hypothesis_key}** [{h.confidence.value}{flag}] {h.summary}")
        for evidence in h.evidence:
            lines.append(f"   - {evidence.statement}")
        if h.missing_data:
            lines.append(f"   - missing: {', '.join(h.missing_data)}")

    lines += ["", "## Tickets", ""]
    if tickets:
        for t in tickets:
            lines.append(f"- [{t.priority.value}] {t.title} ({t.owner.value}, {t.status.value}, seen {t.occurrences}x)")
    else:
        lines.append("No tickets.")

    return "\n".join(lines) + "\n"
