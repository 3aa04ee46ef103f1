"""
PropelAI Data Validation Agent - the blocking validation gate

Checks the company data a proposal will draw on before any volume is
written. Blockers (placeholder identifiers, too few contracts or key
personnel, missing resumes, no labor rates) stop the pipeline until a
human fixes the data and approves; warnings and recommendations are
reported but do not block by default.
"""

import re
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from core.state import utcnow
from agents.base import AgentConfig, AgentContext, AgentResult, BaseAgent

logger = logging.getLogger(__name__)


PLACEHOLDER_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"^ABC123", r"^123456789$", r"^1A2B3$", r"^XXXXX", r"^TBD$", r"^N/A$", r"^test", r"^sample", r"^example")
]

MIN_PAST_PERFORMANCE = 3
MIN_PERSONNEL = 4
MIN_QUANTIFIED_OUTCOMES = 2
POC_STALE_AFTER = timedelta(days=183)
LOW_RATE = 50
HIGH_RATE = 500


@dataclass
class ValidationItem:
    type: str                   # blocker | warning | recommendation
    field: str
    message: str
    fix_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data["fix_path"] is None:
            data.pop("fix_path")
        return data


def is_placeholder(value: Optional[str]) -> bool:
    if not value:
        return False
    return any(p.search(str(value)) for p in PLACEHOLDER_PATTERNS)


def _parse_date(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=utcnow().tzinfo)
    return parsed


def calculate_data_quality_score(
    company_data: Dict[str, Any],
    blockers: List[ValidationItem],
    warnings: List[ValidationItem],
) -> int:
    score = 100 - len(blockers) * 15 - len(warnings) * 5
    if len(company_data.get("past_performance") or []) >= 5:
        score += 5
    if len(company_data.get("personnel") or []) >= 6:
        score += 5
    return max(0, min(100, score))


class ValidationAgent(BaseAgent):
    """Rule-based completeness and plausibility checks on company data"""

    def __init__(self):
        super().__init__(AgentConfig(name="agent_2"))

    async def _execute(self, context: AgentContext, **kwargs) -> AgentResult:
        if not context.job_id or not context.company_id:
            return AgentResult(status="error", errors=["Job ID and Company ID are required"])

        data = context.company_data or {}
        blockers: List[ValidationItem] = []
        warnings: List[ValidationItem] = []
        recommendations: List[ValidationItem] = []

        self._validate_company(data, context.company_id, blockers, warnings)
        self._validate_past_performance(data, context.company_id, blockers, warnings, recommendations)
        self._validate_personnel(data, context, blockers, warnings)
        self._validate_labor_rates(data, context.company_id, blockers, warnings)

        if blockers:
            status = "blocked"
        elif warnings:
            status = "warnings"
        else:
            status = "approved"

        report = {
            "status": status,
            "blockers": [b.to_dict() for b in blockers],
            "warnings": [w.to_dict() for w in warnings],
            "recommendations": [r.to_dict() for r in recommendations],
            "data_quality_score": calculate_data_quality_score(data, blockers, warnings),
            "validated_at": utcnow().isoformat(),
        }

        logger.info(
            f"Validation {status}: {len(blockers)} blockers, {len(warnings)} warnings, "
            f"quality score {report['data_quality_score']}",
            extra={"job_id": context.job_id},
        )

        if status == "blocked":
            return AgentResult(status="blocked", data=report, errors=[b.message for b in blockers])
        return AgentResult(
            status="warning" if warnings else "success",
            data=report,
            warnings=[w.message for w in warnings],
        )

    # ------------------------------------------------------------------

    def _validate_company(self, data, company_id, blockers, warnings) -> None:
        company = data.get("company") or {}
        fix_path = f"/intake/{company_id}#section-1"

        if is_placeholder(company.get("uei")):
            blockers.append(ValidationItem("blocker", "company.uei", "UEI appears to be placeholder data", fix_path))
        if is_placeholder(company.get("cage_code")):
            blockers.append(ValidationItem("blocker", "company.cage_code", "CAGE code appears to be placeholder data", fix_path))

        employees = company.get("employee_count")
        large_contract = any(
            (pp.get("contract_value") or 0) > 50_000_000 for pp in data.get("past_performance") or []
        )
        if employees is not None and employees < 10 and large_contract:
            warnings.append(ValidationItem(
                "warning", "company.employee_count",
                "Company size seems inconsistent with contract values claimed",
            ))

    def _validate_past_performance(self, data, company_id, blockers, warnings, recommendations) -> None:
        contracts = data.get("past_performance") or []
        fix_path = f"/intake/{company_id}#section-3"

        if len(contracts) < MIN_PAST_PERFORMANCE:
            blockers.append(ValidationItem(
                "blocker", "past_performance",
                f"Only {len(contracts)} past performance contracts (need minimum {MIN_PAST_PERFORMANCE})",
                fix_path,
            ))

        stale_before = utcnow() - POC_STALE_AFTER
        for index, pp in enumerate(contracts):
            name = pp.get("project_name", f"contract {index + 1}")

            verified = _parse_date(pp["poc_verified_date"]) if pp.get("poc_verified_date") else None
            if verified is None:
                warnings.append(ValidationItem(
                    "warning", f"past_performance[{index}].poc_verified_date",
                    f'POC for "{name}" has never been verified', fix_path,
                ))
            elif verified < stale_before:
                warnings.append(ValidationItem(
                    "warning", f"past_performance[{index}].poc_verified_date",
                    f'POC for "{name}" was verified over 6 months ago', fix_path,
                ))

            if is_placeholder(pp.get("contract_number")):
                blockers.append(ValidationItem(
                    "blocker", f"past_performance[{index}].contract_number",
                    f'Contract number for "{name}" appears to be placeholder', fix_path,
                ))

            outcomes = pp.get("quantified_outcomes") or []
            if len(outcomes) < MIN_QUANTIFIED_OUTCOMES:
                recommendations.append(ValidationItem(
                    "recommendation", f"past_performance[{index}].quantified_outcomes",
                    f'Add more quantified outcomes for "{name}" ({len(outcomes)}/{MIN_QUANTIFIED_OUTCOMES} minimum)',
                ))

    def _validate_personnel(self, data, context: AgentContext, blockers, warnings) -> None:
        personnel = data.get("personnel") or []
        fix_path = f"/intake/{context.company_id}#section-4"

        if len(personnel) < MIN_PERSONNEL:
            blockers.append(ValidationItem(
                "blocker", "personnel",
                f"Only {len(personnel)} key personnel (need minimum {MIN_PERSONNEL})", fix_path,
            ))

        pm = next((p for p in personnel if p.get("role") == "Program Manager"), None)
        if pm is None:
            blockers.append(ValidationItem("blocker", "personnel", "No Program Manager identified", fix_path))
        elif (pm.get("years_experience") or 0) < 10:
            # Only a blocker when the RFP asks for a ten-year PM
            requires_ten = any(
                "program manager" in r.get("text", "").lower()
                and ("10" in r.get("text", "") or "ten" in r.get("text", "").lower())
                for r in context.requirements
            )
            if requires_ten:
                blockers.append(ValidationItem(
                    "blocker", "personnel.pm.years_experience",
                    f"PM has {pm.get('years_experience') or 0} years experience (RFP requires 10+)", fix_path,
                ))

        for index, person in enumerate(personnel):
            name = person.get("name", f"person {index + 1}")
            if not person.get("resume_url") and not person.get("resume_summary"):
                blockers.append(ValidationItem(
                    "blocker", f"personnel[{index}].resume", f"Missing resume for {name}", fix_path,
                ))
            if person.get("clearance_status") == "Expired":
                warnings.append(ValidationItem(
                    "warning", f"personnel[{index}].clearance_status",
                    f"{name}'s security clearance has expired",
                ))

    def _validate_labor_rates(self, data, company_id, blockers, warnings) -> None:
        rates = data.get("labor_rates") or []
        if not rates:
            blockers.append(ValidationItem(
                "blocker", "labor_rates", "No labor rates defined", f"/intake/{company_id}#section-6",
            ))
            return

        for index, rate in enumerate(rates):
            hourly = rate.get("hourly_rate") or 0
            category = rate.get("category", f"category {index + 1}")
            if hourly < LOW_RATE:
                warnings.append(ValidationItem(
                    "warning", f"labor_rates[{index}].hourly_rate",
                    f"Rate for {category} (${hourly}/hr) seems unusually low",
                ))
            elif hourly > HIGH_RATE:
                warnings.append(ValidationItem(
                    "warning", f"labor_rates[{index}].hourly_rate",
                    f"Rate for {category} (${hourly}/hr) seems unusually high",
                ))


def create_validation_agent() -> ValidationAgent:
    """Factory function to create the validation agent"""
    return ValidationAgent()
