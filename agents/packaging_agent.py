"""
PropelAI Packaging Agent

Composes the final deliverable from the four approved volumes: a cover
page, a table of contents and each volume on its own page, as a single
HTML document. Rendering to PDF/DOCX happens downstream.
"""

import html
import logging
from typing import Dict, List, Optional

from core.state import VOLUME_NUMBERS, utcnow
from agents.base import AgentConfig, AgentContext, AgentResult, BaseAgent, volume_name
from agents.writer_agent import ROMAN

logger = logging.getLogger(__name__)


DOCUMENT_STYLE = """
    body { font-family: "Times New Roman", serif; font-size: 12pt; line-height: 1.5; margin: 0; padding: 20px; }
    h1 { font-size: 18pt; border-bottom: 2px solid #000; margin-top: 0; padding-top: 10px; }
    h2 { font-size: 14pt; color: #1a365d; margin-top: 20px; }
    h3 { font-size: 13pt; color: #2d3748; margin-top: 16px; }
    table { border-collapse: collapse; width: 100%; margin: 12pt 0; table-layout: fixed; font-size: 10pt; }
    th { background: #2c5282; color: white; padding: 8pt; text-align: left; vertical-align: top; }
    td { padding: 6pt 8pt; border: 1px solid #ccc; vertical-align: top; }
    tr { page-break-inside: avoid; }
    .cover-page, .toc, .volume { page-break-after: always; }
    .cover-page { text-align: center; padding-top: 200px; }
    .section-error { border: 1px solid #c53030; padding: 8pt; }
"""


def _cover_page(company: str, solicitation: str, title: str, agency: str) -> str:
    return (
        '<section class="cover-page">\n'
        f"    <h1>{html.escape(title)}</h1>\n"
        f'    <p class="solicitation">Solicitation: {html.escape(solicitation)}</p>\n'
        f'    <p class="agency">{html.escape(agency)}</p>\n'
        f'    <p class="offeror">Submitted by {html.escape(company)}</p>\n'
        f'    <p class="date">{utcnow().strftime("%B %d, %Y")}</p>\n'
        "</section>"
    )


def _table_of_contents(pages: Dict[int, int]) -> str:
    rows = "\n".join(
        f'        <li><a href="#volume-{n}">Volume {ROMAN[n]}: {volume_name(n)}</a>'
        f' <span class="pages">({pages.get(n, 0)} pages)</span></li>'
        for n in VOLUME_NUMBERS
    )
    return f'<section class="toc">\n    <h1>Table of Contents</h1>\n    <ol>\n{rows}\n    </ol>\n</section>'


class PackagingAgent(BaseAgent):
    """Builds final_html; runs only after the assembly barrier passed"""

    def __init__(self):
        super().__init__(AgentConfig(name="agent_8"))

    async def _execute(self, context: AgentContext, page_counts: Optional[Dict[int, int]] = None, **kwargs) -> AgentResult:
        missing = [n for n in VOLUME_NUMBERS if not context.volumes.get(n)]
        if missing:
            return AgentResult(status="error", errors=[f"Missing volume content: {missing}"])

        metadata = context.rfp_parsed_data.get("metadata") or {}
        company = context.company_name or "Company"
        solicitation = metadata.get("solicitation_num") or "RFP"

        parts: List[str] = [
            "<!DOCTYPE html>",
            "<html>",
            "<head>",
            f"    <title>Complete Proposal - {html.escape(solicitation)} - {html.escape(company)}</title>",
            f"    <style>{DOCUMENT_STYLE}</style>",
            "</head>",
            "<body>",
            _cover_page(company, solicitation, metadata.get("title") or "Government RFP", metadata.get("agency") or ""),
            _table_of_contents(page_counts or {}),
        ]
        for n in VOLUME_NUMBERS:
            parts.append(f'<section class="volume" id="volume-{n}">\n{context.volumes[n]}\n</section>')
        parts += ["</body>", "</html>"]

        final_html = "\n".join(parts)
        logger.info(
            f"Packaged final document ({len(final_html)} chars) for {company}",
            extra={"job_id": context.job_id},
        )
        return AgentResult(status="success", data={"final_html": final_html})


def create_packaging_agent() -> PackagingAgent:
    """Factory function to create the packaging agent"""
    return PackagingAgent()
