"""
Compliance Sentinel - heuristic trust checks on a generated answer.

Four checks, each starting at confidence 1.0 and losing points per issue:

  hallucination         generic citations, unexplained figures, hedging, source mismatch
  numeric-consistency   inline arithmetic and claimed totals
  reporting-compliance  GAAP/IFRS citations and terminology (audit-plan / calculation only)
  tax-compliance        disclaimers, stale tax years, form numbers (tax queries only)

validate() only reads the answer and never raises. A check that blows up is
reported as a passed-with-warning result so the answer still goes out.
"""

import datetime
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger("advisory-router.sentinel")

HALLUCINATION = "hallucination"
NUMERIC_CONSISTENCY = "numeric-consistency"
REPORTING_COMPLIANCE = "reporting-compliance"
TAX_COMPLIANCE = "tax-compliance"

REGULATED_MODES = ("audit-plan", "calculation")


@dataclass(frozen=True)
class ComplianceCheckResult:
    kind: str
    passed: bool
    confidence: float
    issues: Tuple[str, ...] = ()
    evidence: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "passed": self.passed,
            "confidence": round(self.confidence, 4),
            "issues": list(self.issues),
            "evidence": list(self.evidence),
        }


@dataclass
class CognitiveMonitorResult:
    checks: List[ComplianceCheckResult]
    overall_status: str
    requires_human_review: bool
    processing_time_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checks": [c.to_dict() for c in self.checks],
            "overall_status": self.overall_status,
            "requires_human_review": self.requires_human_review,
            "processing_time_ms": self.processing_time_ms,
        }


@dataclass
class ValidationContext:
    mode: str = "standard"
    source_documents: Sequence[str] = field(default_factory=tuple)


def aggregate(checks: List[ComplianceCheckResult]) -> Tuple[str, bool]:
    any_failed = any(not c.passed for c in checks)
    any_warning = any(c.confidence < 0.8 for c in checks)
    status = "fail" if any_failed else "warning" if any_warning else "pass"
    review = any_failed or any(c.confidence < 0.6 for c in checks)
    return status, review


def _result(kind: str, issues: List[str], confidence: float, passed: bool, evidence: str) -> ComplianceCheckResult:
    return ComplianceCheckResult(
        kind=kind,
        passed=passed,
        confidence=max(0.0, min(1.0, confidence)),
        issues=tuple(issues),
        evidence=(evidence,) if passed else (),
    )


# ---------- Patterns ----------
_NUM = r"\d[\d,]*(?:\.\d+)?"

GENERIC_CITATIONS = [
    re.compile(r"according to .{0,80}?stud(?:y|ies)", re.I),
    re.compile(r"research (?:shows|suggests|indicates)", re.I),
    re.compile(r"\b\d{4}\s+survey", re.I),
    re.compile(r"source:\s*\[[^\]]*\]", re.I),
]
SPECIFIC_CITATIONS = [
    re.compile(r"IRC\s*§?\s*\d+", re.I),
    re.compile(r"§\s*\d+"),
    re.compile(r"ASC\s*\d+(?:-\d+)?", re.I),
    re.compile(r"IFRS\s*\d+", re.I),
    re.compile(r"IAS\s*\d+", re.I),
    re.compile(r"https?://", re.I),
    re.compile(r"Publication\s*\d+", re.I),
    re.compile(r"Rev\.\s*(?:Proc|Rul)\.", re.I),
]
FIGURE_RE = re.compile(r"\$\s?" + _NUM + r"|" + _NUM + r"\s?%")
EXPLANATION_RE = re.compile(
    r"\b(?:for|from|total|revenue|expense|deduction|credit|income|cost|fee|payment)s?\b", re.I
)
HEDGES = ["i believe", "probably", "it seems", "i think", "in my experience", "typically around", "approximately worth"]

# Whole chains such as "$10 + $5 + $3 = $18"; never starts inside a number.
_OPERAND = r"\$?\s?" + _NUM
_OPERATOR = r"[+\-*/×x÷]"
ARITHMETIC_RE = re.compile(
    r"(?<![\d.,$])(" + _OPERAND + r"(?:\s*" + _OPERATOR + r"\s*" + _OPERAND + r")+)\s*=\s*(-?\$?\s?" + _NUM + r")"
)
OPERAND_RE = re.compile(_NUM)
OPERATOR_RE = re.compile(r"(?<=[\d\s])" + _OPERATOR + r"(?=[\s$\d])")
TOTAL_RE = re.compile(r"\btotals?\b\s*(?:is|of|was|comes to|:|=)?\s*(\$)?\s?(" + _NUM + r")", re.I)
AMOUNT_RE = re.compile(r"(\$)?\s?(" + _NUM + r")")

REVENUE_TOPIC = re.compile(r"revenue recognition|performance obligation", re.I)
REVENUE_STANDARD = re.compile(r"ASC\s*606|IFRS\s*15", re.I)
LEASE_TOPIC = re.compile(r"\blease(?:s|d)?\b|right-of-use|lease liabilit", re.I)
LEASE_STANDARD = re.compile(r"ASC\s*842|IFRS\s*16", re.I)
DISCOURAGED_TERMS = [
    (re.compile(r"\bprofits?\b", re.I), 'Use "net income" rather than "profit" per GAAP terminology'),
    (re.compile(r"cash flow from sales", re.I), '"Cash flow from sales" is unclear; specify operating, investing, or financing'),
]

TAX_QUERY_RE = re.compile(r"tax|irs|deduction|credit|depreciation|1040|w-2", re.I)
ADVICE_RE = re.compile(r"you should|i recommend|you can deduct|claim.*credit", re.I)
DISCLAIMER_RE = re.compile(r"consult.*tax professional|professional advice|\bCPA\b|tax advisor", re.I)
YEAR_RE = re.compile(r"\b(20\d{2})\b")
FORM_RE = re.compile(r"\bForm\s+(W-\d+|\d{3,4}[A-Z]?(?:-[A-Z]+)?)", re.I)
VALID_FORMS = ("1040", "1065", "1120", "1099", "8949", "W-2", "W-4", "941", "940")


def _to_float(raw: str) -> float:
    return float(raw.replace(",", ""))


def _evaluate(expression: str) -> Optional[float]:
    """Evaluate an operand/operator chain with the usual precedence; None on division by zero."""
    operands = [_to_float(n) for n in OPERAND_RE.findall(expression)]
    operators = OPERATOR_RE.findall(expression)
    if len(operators) != len(operands) - 1:
        return None

    terms = [operands[0]]
    signs: List[str] = []
    for op, value in zip(operators, operands[1:]):
        if op in ("+", "-"):
            signs.append(op)
            terms.append(value)
        elif op in ("*", "x", "×"):
            terms[-1] *= value
        else:
            if value == 0:
                return None
            terms[-1] /= value

    total = terms[0]
    for sign, value in zip(signs, terms[1:]):
        total = total + value if sign == "+" else total - value
    return total


def _figures(text: str) -> List[Tuple[int, str]]:
    return [(m.start(), m.group(0)) for m in FIGURE_RE.finditer(text)]


def _figure_values(text: str) -> set:
    values = set()
    for _, raw in _figures(text):
        values.add(round(_to_float(raw.strip("$% ")), 2))
    for m in AMOUNT_RE.finditer(text):
        values.add(round(_to_float(m.group(2)), 2))
    return values


class ComplianceValidator:
    def __init__(self, today: Callable[[], datetime.date] = datetime.date.today):
        self._today = today

    def validate(self, query: str, response: str, context: Optional[ValidationContext] = None) -> CognitiveMonitorResult:
        t0 = time.perf_counter()
        context = context or ValidationContext()
        query = query if isinstance(query, str) else ""
        response = response if isinstance(response, str) else ""

        checks = [
            self._run(HALLUCINATION, self.check_hallucination, response, context.source_documents),
            self._run(NUMERIC_CONSISTENCY, self.check_numeric_consistency, response),
            self._run(REPORTING_COMPLIANCE, self.check_reporting_compliance, query, response, context.mode),
            self._run(TAX_COMPLIANCE, self.check_tax_compliance, query, response),
        ]
        status, review = aggregate(checks)
        elapsed = int((time.perf_counter() - t0) * 1000)
        logger.info(f"Validation {status} (review={review}) in {elapsed}ms")
        return CognitiveMonitorResult(checks, status, review, elapsed)

    def _run(self, kind: str, check: Callable[..., ComplianceCheckResult], *args) -> ComplianceCheckResult:
        try:
            return check(*args)
        except Exception as e:
            logger.exception(f"Compliance check {kind} failed internally")
            return ComplianceCheckResult(kind, True, 0.7, (f"Check could not complete: {type(e).__name__}: {e}",), ())

    # ---------- Checks ----------
    def check_hallucination(self, response: str, source_documents: Sequence[str] = ()) -> ComplianceCheckResult:
        issues: List[str] = []
        confidence = 1.0

        if not any(p.search(response) for p in SPECIFIC_CITATIONS):
            for pattern in GENERIC_CITATIONS:
                if pattern.search(response):
                    issues.append("Generic citation without specific source details")
                    confidence -= 0.2

        figures = _figures(response)
        if len(figures) > 5:
            explained = 0
            for pos, raw in figures:
                window = response[max(0, pos - 50): pos + len(raw) + 50]
                if EXPLANATION_RE.search(window):
                    explained += 1
            if explained / len(figures) < 0.7:
                issues.append(f"Multiple unexplained numerical values ({len(figures) - explained} of {len(figures)})")
                confidence -= 0.15

        lowered = response.lower()
        hedges = sum(lowered.count(h) for h in HEDGES)
        if hedges > 2:
            issues.append(f"High use of uncertain language ({hedges} instances)")
            confidence -= 0.1 * hedges

        docs = [d for d in (source_documents or ()) if isinstance(d, str) and d.strip()]
        if docs and self._document_mismatch(response, docs):
            issues.append("Response contains figures not found in the supplied documents")
            confidence -= 0.3

        passed = not issues or confidence > 0.7
        return _result(HALLUCINATION, issues, confidence, passed, "No hallucination patterns detected")

    @staticmethod
    def _document_mismatch(response: str, documents: Sequence[str]) -> bool:
        answer_values = {round(_to_float(raw.strip("$% ")), 2) for _, raw in _figures(response)}
        if not answer_values:
            return False
        source_values = set()
        for doc in documents:
            source_values |= _figure_values(doc)
        if not source_values:
            return False
        return not (answer_values & source_values)

    def check_numeric_consistency(self, response: str) -> ComplianceCheckResult:
        issues: List[str] = []
        confidence = 1.0

        for m in ARITHMETIC_RE.finditer(response):
            actual = _evaluate(m.group(1))
            if actual is None:
                continue
            claimed = _to_float(OPERAND_RE.search(m.group(2)).group(0))
            if m.group(2).startswith("-"):
                claimed = -claimed
            if abs(actual - claimed) > 0.01:
                issues.append(f"Incorrect calculation: {m.group(0).strip()} (expected {round(actual, 2)})")
                confidence -= 0.4

        segment_start = 0
        for m in TOTAL_RE.finditer(response):
            monetary = bool(m.group(1))
            claimed = _to_float(m.group(2))
            preceding = response[segment_start:m.start()]
            segment_start = m.end()

            values = [
                _to_float(v.group(2)) for v in AMOUNT_RE.finditer(preceding)
                if v.group(1) or not monetary
            ]
            if len(values) < 2:
                continue
            actual = sum(values[-5:])
            diff = abs(actual - claimed)
            if diff > 0.01 and (claimed == 0 or diff / abs(claimed) > 0.01):
                prefix = "$" if monetary else ""
                issues.append(
                    f"Total {prefix}{m.group(2)} doesn't match sum of preceding values ({prefix}{round(actual, 2)})"
                )
                confidence -= 0.3

        passed = not issues
        return _result(NUMERIC_CONSISTENCY, issues, confidence, passed, "All calculations verified")

    def check_reporting_compliance(self, query: str, response: str, mode: str = "standard") -> ComplianceCheckResult:
        if mode not in REGULATED_MODES:
            return ComplianceCheckResult(REPORTING_COMPLIANCE, True, 1.0, (), ("Not applicable for this mode",))

        issues: List[str] = []
        confidence = 1.0
        discussed = f"{query}\n{response}"

        if REVENUE_TOPIC.search(discussed) and not REVENUE_STANDARD.search(response):
            issues.append("Revenue recognition discussed without citing ASC 606 / IFRS 15")
            confidence -= 0.2
        if LEASE_TOPIC.search(discussed) and not LEASE_STANDARD.search(response):
            issues.append("Lease accounting discussed without citing ASC 842 / IFRS 16")
            confidence -= 0.15
        for pattern, issue in DISCOURAGED_TERMS:
            if pattern.search(response):
                issues.append(issue)
                confidence -= 0.1

        passed = not issues or confidence > 0.6
        return _result(REPORTING_COMPLIANCE, issues, confidence, passed, "Reporting terminology and citations followed")

    def check_tax_compliance(self, query: str, response: str) -> ComplianceCheckResult:
        if not TAX_QUERY_RE.search(query or ""):
            return ComplianceCheckResult(TAX_COMPLIANCE, True, 1.0, (), ("Not a tax query",))

        issues: List[str] = []
        confidence = 1.0

        if ADVICE_RE.search(response) and not DISCLAIMER_RE.search(response):
            issues.append("Tax advice provided without professional consultation disclaimer")
            confidence -= 0.3

        cutoff = self._today().year - 2
        old_years = sorted({y for y in YEAR_RE.findall(response) if int(y) < cutoff})
        if old_years:
            issues.append(f"References to potentially outdated tax years: {', '.join(old_years)}")
            confidence -= 0.15

        forms = [f for f in FORM_RE.findall(response) if not f.upper().startswith(VALID_FORMS)]
        if forms:
            issues.append(f"Uncommon or potentially invalid form references: {', '.join(forms)}")
            confidence -= 0.2

        passed = not issues or confidence > 0.6
        return _result(TAX_COMPLIANCE, issues, confidence, passed, "Tax guidance conventions followed")
