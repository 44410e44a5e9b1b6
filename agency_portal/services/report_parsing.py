"""
Display-time parsing of the loose text conventions used in report sections.

Nothing here raises on malformed content: a section that does not follow its
convention is rendered as plain paragraphs instead.
"""
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import markdown
from flask import render_template
from markupsafe import Markup

BLOCK_HEADING_RE = re.compile(r'^\s*(INSIGHT|TREND|RECOMMENDATION)\s+(\d+)\s*:\s*(.*)$', re.IGNORECASE)
LABEL_RE = re.compile(
    r'^\s*(Observation|Cause|Action Taken|Expected Impact|Risk|What|Why|Impact|Timeline)\s*:\s*(.*)$',
    re.IGNORECASE,
)


@dataclass
class NextStepsTable:
    headers: List[str]
    rows: List[List[str]]


@dataclass
class InsightCard:
    kind: str
    number: int
    heading: str = ''
    fields: List[Tuple[str, str]] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)


def _split_pipe_line(line):
    return [cell.strip() for cell in line.strip().strip('|').split('|')]


def parse_next_steps(content) -> Optional[NextStepsTable]:
    lines = [line for line in (content or '').splitlines() if line.strip()]
    pipe_lines = [line for line in lines if '|' in line]
    if not pipe_lines or len(pipe_lines) != len(lines):
        return None

    headers = _split_pipe_line(pipe_lines[0])
    rows = []
    for line in pipe_lines[1:]:
        # Markdown separator row: |---|---|
        if re.fullmatch(r'[\s|:\-]+', line):
            continue
        cells = _split_pipe_line(line)
        cells += [''] * (len(headers) - len(cells))
        rows.append(cells[:len(headers)])
    return NextStepsTable(headers=headers, rows=rows)


def parse_insights(content) -> Optional[List[InsightCard]]:
    cards = []
    current = None
    for line in (content or '').splitlines():
        if not line.strip():
            continue
        heading = BLOCK_HEADING_RE.match(line)
        if heading:
            current = InsightCard(
                kind=heading.group(1).upper(),
                number=int(heading.group(2)),
                heading=heading.group(3).strip(),
            )
            cards.append(current)
            continue
        if current is None:
            # Text before the first block means this is not the block format
            return None
        label = LABEL_RE.match(line)
        if label:
            current.fields.append((label.group(1).title(), label.group(2).strip()))
        else:
            current.notes.append(line.strip())
    return cards or None


def render_markdown(content):
    return Markup(markdown.markdown(content or '', extensions=['nl2br']))


def render_section(section):
    """HTML for one report section, choosing the structured view when the content allows it."""
    content = section.content or ''
    if section.section_type == 'next_steps':
        table = parse_next_steps(content)
        if table is not None:
            return Markup(render_template('reports/next_steps.html', table=table))
    if section.section_type in ('insights', 'recommendations'):
        cards = parse_insights(content)
        if cards is not None:
            return Markup(render_template('reports/insight_cards.html', cards=cards))
    return render_markdown(content)
