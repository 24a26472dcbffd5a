"""
Text rendering of run reports, plans and service status for the CLI.
"""
from typing import Dict, List, Tuple

from jinja2 import Environment

from ..MANAGERS.lifecycle_manager import ServiceStatus
from ..MODELS.execution import RunReport, UnitResult

REPORT_TEMPLATE = """\
{% for phase in phases %}
{{ phase }}
{% endfor %}
{{ report.operation | upper }} ({{ report.strategy.value }}, concurrency {{ report.max_concurrency }}{% if report.advice_fallback %}, fallback{% endif %}) {{ report.state.value }} in {{ '%.1f' | format(report.duration) }}s
{{ '%-24s %-10s %9s  %s' | format('SERVICE', 'STATUS', 'DURATION', 'DETAIL') }}
{{ '-' * 64 }}
{% for name, r in rows %}
{{ '%-24s %-10s %8.1fs  %s' | format(name, r.status.value, r.duration, detail(r)) | trim }}
{% endfor %}
{{ '-' * 64 }}
{{ report.succeeded }} succeeded, {{ report.failed }} failed, {{ report.skipped }} skipped
{% if report.abort_reason %}
Aborted: {{ report.abort_reason }}
{% endif %}
"""

STATUS_TEMPLATE = """\
{{ '%-24s %-10s %s' | format('SERVICE', 'STATE', 'HEALTH') }}
{{ '-' * 44 }}
{% for name, s in statuses.items() %}
{{ '%-24s %-10s %s' | format(name, s.state.value, s.health.value) }}
{% endfor %}
"""

PLAN_TEMPLATE = """\
{% for batch in batches %}
Batch {{ loop.index }}: {{ batch | join(', ') }}
{% else %}
Nothing to do
{% endfor %}
"""

_env = Environment(trim_blocks=True, lstrip_blocks=True, keep_trailing_newline=True)


def _detail(result: UnitResult) -> str:
    if result.error_kind:
        return f"[{result.error_kind.value}] {result.error}"
    return result.error or ""


def _rows(report: RunReport) -> List[Tuple[str, UnitResult]]:
    """Results in batch order, then any result that was never scheduled."""
    order = [name for batch in report.batches for name in batch]
    order += [name for name in report.results if name not in order]
    return [(name, report.results[name]) for name in order if name in report.results]


def render_report(report: RunReport) -> str:
    """
    Renders a report as a table of unit results, preceded by the reports of
    earlier phases.
    """
    return _env.from_string(REPORT_TEMPLATE).render(
        report=report,
        phases=[render_report(phase) for phase in report.phases],
        rows=_rows(report),
        detail=_detail,
    )


def render_status(statuses: Dict[str, ServiceStatus]) -> str:
    return _env.from_string(STATUS_TEMPLATE).render(statuses=statuses)


def render_plan(batches: List[List[str]]) -> str:
    return _env.from_string(PLAN_TEMPLATE).render(batches=batches)
