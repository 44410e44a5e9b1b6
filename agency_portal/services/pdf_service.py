import re

from flask import current_app
from fpdf import FPDF
from fpdf.enums import XPos, YPos

from agency_portal.services.report_parsing import parse_insights, parse_next_steps

# Core PDF fonts are latin-1 only
LATIN1_REPLACEMENTS = {
    "\u2013": "-", "\u2014": "-",
    "\u2018": "'", "\u2019": "'",
    "\u201c": "\"", "\u201d": "\"",
    "\u2022": "-", "\u2026": "...",
    "\u00a0": " ", "\u200b": "",
}
MARKDOWN_LINK_RE = re.compile(r'\[([^\]]+)\]\([^)]+\)')


def to_latin1(text):
    for src, dst in LATIN1_REPLACEMENTS.items():
        text = text.replace(src, dst)
    return text.encode('latin-1', 'replace').decode('latin-1')


class ReportPDF(FPDF):
    def __init__(self, org_name, report_title, period_label):
        super().__init__()
        self.org_name = org_name
        self.report_title = report_title
        self.period_label = period_label
        self.set_auto_page_break(auto=True, margin=20)

    def header(self):
        self.set_font('Helvetica', 'B', 16)
        self.set_text_color(0, 0, 0)
        self.cell(0, 10, to_latin1(self.org_name.upper()), 0, 1, 'L')

        self.set_font('Helvetica', '', 9)
        self.set_text_color(100, 100, 100)
        self.cell(0, 5, to_latin1(self.period_label), 0, 1, 'L')

        self.set_draw_color(200, 200, 200)
        self.set_line_width(0.5)
        self.line(10, self.get_y() + 2, 200, self.get_y() + 2)
        self.ln(6)

    def footer(self):
        self.set_y(-15)
        self.set_font('Helvetica', 'I', 8)
        self.set_text_color(128)
        footer_text = f"{self.org_name} - {self.report_title} | Page {self.page_no()} of {{nb}}"
        self.cell(0, 10, to_latin1(footer_text), 0, 0, 'C')

    def section_title(self, title):
        self.set_font('Helvetica', 'B', 12)
        self.set_text_color(0)
        self.ln(2)
        self.multi_cell(0, 7, to_latin1(title), new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        self.ln(1)

    def paragraph(self, text):
        self.set_font('Helvetica', '', 10)
        self.set_text_color(40, 40, 40)
        self.multi_cell(0, 5, to_latin1(MARKDOWN_LINK_RE.sub(r"\1", text)), new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        self.ln(2)


class PdfService:
    @staticmethod
    def _write_section(pdf, section):
        pdf.section_title(section.title or section.section_type.replace('_', ' ').title())
        content = section.content or ''

        if section.section_type == 'next_steps':
            table = parse_next_steps(content)
            if table is not None:
                for row in table.rows:
                    pdf.paragraph(' | '.join(f"{h}: {v}" for h, v in zip(table.headers, row) if v))
                return

        if section.section_type in ('insights', 'recommendations'):
            cards = parse_insights(content)
            if cards is not None:
                for card in cards:
                    lines = [f"{card.kind.title()} {card.number}{': ' + card.heading if card.heading else ''}"]
                    lines += [f"{label}: {value}" for label, value in card.fields]
                    lines += card.notes
                    pdf.paragraph('\n'.join(lines))
                return

        pdf.paragraph(content or '-')

    @staticmethod
    def generate_report_pdf(report, org_name):
        current_app.logger.info(f"Generating PDF for Report ID: {report.id}")
        period_label = f"{report.title} ({report.period_start.isoformat()} to {report.period_end.isoformat()})"
        pdf = ReportPDF(org_name=org_name, report_title=report.title, period_label=period_label)
        pdf.alias_nb_pages()
        pdf.add_page()

        if not report.sections:
            pdf.paragraph("This report has no sections yet.")
        for section in report.sections:
            PdfService._write_section(pdf, section)

        return bytes(pdf.output())
