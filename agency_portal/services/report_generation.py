"""
Rule-based text blocks for auto-generated reports.

Every block is a deterministic expansion of stored deliverables and metrics;
nothing here invents content that is not in the data.
"""
from collections import Counter

from agency_portal.services import deliverable_service
from agency_portal.services.deliverable_service import (
    DONE_STATUSES, STATUS_BLOCKED, STATUS_IN_REVIEW, STATUS_LABELS, STATUS_REVISIONS,
)
from agency_portal.utils import format_short_date

MAX_INSIGHTS = 5
MAX_NEXT_STEPS = 6
NEXT_STEPS_HEADER = 'Action | Why | Owner | ETA | Status'
NO_NEXT_STEPS_TEXT = 'No next steps identified. All deliverables are on track.'
NO_WORK_TEXT = 'No deliverables completed in this period.'


def generate_summary_block(org_id, period_start, period_end):
    created = deliverable_service.created_in_period(org_id, period_start, period_end)
    completed = deliverable_service.completed_in_period(org_id, period_start, period_end)
    notable = created[0].title if created else 'Not available'
    bullets = [
        f"{len(created)} deliverables created",
        f"{len(completed)} deliverables completed",
        f"Notable: {notable}",
    ]
    return '\n'.join(f"• {b}" for b in bullets)


def generate_work_block(org_id, period_start, period_end):
    completed = deliverable_service.completed_in_period(org_id, period_start, period_end)
    if not completed:
        return NO_WORK_TEXT
    lines = []
    for d in reversed(completed):
        lines.append(
            f"- {d.title} ({d.type or 'deliverable'}) - Completed {format_short_date(d.completed_at)} "
            f"| [View Deliverable](/projects?deliverable={d.id})"
        )
    return '\n'.join(lines)


def auto_populate_proof_of_work(org_id, period_start, period_end):
    completed = deliverable_service.completed_in_period(org_id, period_start, period_end)
    if completed:
        items = '\n'.join(
            f"- {d.title} ({d.type or 'deliverable'}) - {format_short_date(d.completed_at)}" for d in completed
        )
    else:
        items = NO_WORK_TEXT
    return (
        f"DELIVERABLES COMPLETED:\n{items}\n\n"
        "CHANGES SHIPPED:\n[Auto-populated from deliverable updates/activity log]\n\n"
        "TESTS LAUNCHED:\n[Optional manual entry]"
    )


def _plural(count, word):
    return f"{count} {word}{'' if count == 1 else 's'}"


def generate_insights_block(org_id, period_start, period_end):
    created = deliverable_service.created_in_period(org_id, period_start, period_end)
    done = [d for d in created if d.status in DONE_STATUSES]
    observations = []

    if created:
        rate = round(len(done) / len(created) * 100)
        observations.append(f"Completion rate: {rate}% ({len(done)} of {len(created)} deliverables)")
    else:
        observations.append('Completion rate: Not available (no deliverables created)')

    durations = [(d.completed_at - d.created_at).days for d in done if d.completed_at and d.created_at]
    if durations and round(sum(durations) / len(durations)) > 0:
        observations.append(f"Average time to complete: {round(sum(durations) / len(durations))} days")
    else:
        observations.append('Average time to complete: Not available')

    in_review = sum(1 for d in created if d.status == STATUS_IN_REVIEW)
    if in_review:
        observations.append(f"{_plural(in_review, 'deliverable')} in review")
    blocked = sum(1 for d in created if d.status == STATUS_BLOCKED)
    if blocked:
        observations.append(f"{_plural(blocked, 'deliverable')} blocked")

    if created:
        counts = Counter(d.status for d in created)
        distribution = ', '.join(f"{status}: {count}" for status, count in counts.items())
        observations.append(f"Status distribution: {distribution}")

    blocks = []
    for index, observation in enumerate(observations[:MAX_INSIGHTS], start=1):
        blocks.append(f"INSIGHT {index}:\nObservation: {observation}")
    return '\n\n'.join(blocks)


def _next_step_row(action, why, deliverable):
    owner = 'Assigned' if deliverable.assigned_to else 'Unassigned'
    eta = f"{deliverable.due_date.strftime('%b')} {deliverable.due_date.day}" if deliverable.due_date else 'Not set'
    status = STATUS_LABELS.get(deliverable.status, deliverable.status or '')
    return f"{action} | {why} | {owner} | {eta} | {status}"


def generate_next_steps_block(org_id):
    rows = []
    for d in deliverable_service.open_deliverables(org_id):
        if d.status == STATUS_IN_REVIEW:
            rows.append(_next_step_row(f'Review "{d.title}"', 'Awaiting review', d))
        elif d.status == STATUS_REVISIONS:
            rows.append(_next_step_row(f'Address revisions for "{d.title}"', 'Revisions requested', d))
        elif d.status == STATUS_BLOCKED:
            rows.append(_next_step_row(f'Unblock "{d.title}"', 'Blocked', d))
        else:
            rows.append(_next_step_row(f'Complete "{d.title}"', 'Not finished yet', d))
        if len(rows) >= MAX_NEXT_STEPS:
            break
    if not rows:
        return NO_NEXT_STEPS_TEXT
    return '\n'.join([NEXT_STEPS_HEADER] + rows)


# Starter sections for manually written reports
REPORT_TEMPLATES = {
    'monthly': {
        'name': 'Monthly Performance Report',
        'sections': [
            ('summary', 'Executive Summary', ''),
            ('metrics', 'Key Metrics', ''),
            ('proof_of_work', 'Proof of Work', None),
            ('insights', 'Insights',
             'INSIGHT 1:\nObservation: \nCause: \nAction Taken: \nExpected Impact: \nRisk: '),
            ('next_steps', 'Next Steps', NEXT_STEPS_HEADER + '\n'),
        ],
    },
    'quarterly': {
        'name': 'Quarterly Business Review',
        'sections': [
            ('summary', 'Quarter in Review', ''),
            ('metrics', 'Quarterly Metrics', ''),
            ('insights', 'Trends', 'TREND 1:\nWhat: \nWhy: \nImpact: '),
            ('recommendations', 'Recommendations',
             'RECOMMENDATION 1:\nWhat: \nWhy: \nImpact: \nTimeline: '),
            ('next_steps', 'Next Quarter Plan', NEXT_STEPS_HEADER + '\n'),
        ],
    },
    'campaign': {
        'name': 'Campaign Report',
        'sections': [
            ('summary', 'Campaign Overview', ''),
            ('metrics', 'Campaign Results', ''),
            ('insights', 'What We Learned',
             'INSIGHT 1:\nObservation: \nCause: \nAction Taken: \nExpected Impact: '),
            ('next_steps', 'Next Steps', NEXT_STEPS_HEADER + '\n'),
        ],
    },
}
