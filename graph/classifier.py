"""
Query Classifier - deterministic keyword triage for accounting questions.

classify(text) -> QueryClassification

The rule table (domains, sub-domains, jurisdictions, requirement flags,
complexity weights) lives in config/classifier_rules.yaml so it can be
versioned and tested on its own. This module only compiles and applies it.
classify() is total: empty or unusable input degrades to the default domain
with low confidence instead of raising.
"""

import logging
import os
import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Pattern, Tuple

from graph.config import DEFAULT_RULES_PATH, load_yaml

logger = logging.getLogger("advisory-router.classifier")


class Domain(str, Enum):
    TAX = "tax"
    AUDIT = "audit"
    FINANCIAL_REPORTING = "financial_reporting"
    COMPLIANCE = "compliance"
    GENERAL_ACCOUNTING = "general_accounting"
    ADVISORY = "advisory"


class Complexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    EXPERT = "expert"


REQUIREMENT_FLAGS = (
    "needs_calculation",
    "needs_research",
    "needs_document_analysis",
    "needs_real_time_data",
    "needs_deep_reasoning",
)


@dataclass(frozen=True)
class QueryClassification:
    domain: Domain = Domain.GENERAL_ACCOUNTING
    sub_domain: Optional[str] = None
    jurisdictions: Tuple[str, ...] = ()
    complexity: Complexity = Complexity.SIMPLE
    needs_calculation: bool = False
    needs_research: bool = False
    needs_document_analysis: bool = False
    needs_real_time_data: bool = False
    needs_deep_reasoning: bool = False
    keywords: Tuple[str, ...] = ()
    confidence: float = 0.4
    rules_version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["domain"] = self.domain.value
        data["complexity"] = self.complexity.value
        data["jurisdictions"] = list(self.jurisdictions)
        data["keywords"] = list(self.keywords)
        return data


# ---------- Rule compilation ----------
def keyword_pattern(keywords: List[str]) -> Optional[Pattern]:
    """
    One regex matching any keyword as a whole token.

    A keyword may not be glued to other letters or digits ("sec" does not
    match "second"), except for a plural "s"/"es" suffix ("taxes").
    """
    alts = []
    for kw in sorted({str(k).lower() for k in keywords}, key=len, reverse=True):
        body = r"\s+".join(re.escape(w) for w in kw.split())
        if body:
            alts.append(body)
    if not alts:
        return None
    return re.compile(r"(?<![a-z0-9])(?:" + "|".join(alts) + r")(?:s|es)?(?![a-z0-9])")


@dataclass
class ClassifierRules:
    version: int
    domains: List[Tuple[Domain, Pattern]]
    default_domain: Domain
    sub_domains: Dict[Domain, List[Tuple[str, Pattern]]]
    jurisdictions: List[Tuple[str, Pattern]]
    technical_terms: Optional[Pattern]
    requirements: Dict[str, Optional[Pattern]]
    conjunctions: Optional[Pattern]
    stop_words: frozenset
    complexity: Dict[str, int]
    confidence: Dict[str, float]
    max_keywords: int = 10
    min_keyword_length: int = 4
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClassifierRules":
        requirements = data.get("requirements", {})
        missing = [f for f in REQUIREMENT_FLAGS if f not in requirements]
        if missing:
            raise ValueError(f"Classifier rules missing requirement sets: {missing}")

        return cls(
            version=int(data.get("version", 0)),
            domains=[(Domain(d["name"]), keyword_pattern(d["keywords"])) for d in data.get("domains", [])],
            default_domain=Domain(data.get("default_domain", Domain.GENERAL_ACCOUNTING.value)),
            sub_domains={
                Domain(dom): [(s["name"], keyword_pattern(s["keywords"])) for s in subs]
                for dom, subs in (data.get("sub_domains") or {}).items()
            },
            jurisdictions=[(name, keyword_pattern(kws)) for name, kws in (data.get("jurisdictions") or {}).items()],
            technical_terms=keyword_pattern(data.get("technical_terms", [])),
            requirements={flag: keyword_pattern(requirements[flag]) for flag in REQUIREMENT_FLAGS},
            conjunctions=keyword_pattern(data.get("conjunctions", [])),
            stop_words=frozenset(w.lower() for w in data.get("stop_words", [])),
            complexity=data.get("complexity", {}),
            confidence=data.get("confidence", {}),
            max_keywords=int(data.get("max_keywords", 10)),
            min_keyword_length=int(data.get("min_keyword_length", 4)),
            raw=data,
        )


def load_rules(path: Optional[str] = None) -> ClassifierRules:
    path = path or os.getenv("CLASSIFIER_RULES", str(DEFAULT_RULES_PATH))
    rules = ClassifierRules.from_dict(load_yaml(path))
    logger.info(f"Loaded classifier rules v{rules.version} from {path}")
    return rules


def _matches(pattern: Optional[Pattern], text: str) -> bool:
    return bool(pattern is not None and pattern.search(text))


_WORD_RE = re.compile(r"[a-z0-9][a-z0-9'\-]*")


# ---------- Classifier ----------
class QueryClassifier:
    def __init__(self, rules: Optional[ClassifierRules] = None):
        self.rules = rules or load_rules()

    def degraded(self) -> QueryClassification:
        return QueryClassification(
            domain=self.rules.default_domain,
            complexity=Complexity.SIMPLE,
            confidence=float(self.rules.confidence.get("short_text", 0.4)),
            rules_version=self.rules.version,
        )

    def classify(self, text: Any) -> QueryClassification:
        if not isinstance(text, str) or not text.strip():
            logger.debug("Classification degraded: empty or non-text query")
            return self.degraded()
        try:
            return self._classify(text)
        except Exception as e:
            logger.warning(f"Classification degraded after rule failure: {e}")
            return self.degraded()

    def _classify(self, text: str) -> QueryClassification:
        r = self.rules
        lowered = text.lower()

        domain = r.default_domain
        for candidate, pattern in r.domains:
            if _matches(pattern, lowered):
                domain = candidate
                break

        sub_domain = None
        for name, pattern in r.sub_domains.get(domain, []):
            if _matches(pattern, lowered):
                sub_domain = name
                break

        jurisdictions: Tuple[str, ...] = ()
        if domain is not r.default_domain:
            jurisdictions = tuple(name for name, pattern in r.jurisdictions if _matches(pattern, lowered))

        flags = {flag: _matches(r.requirements[flag], lowered) for flag in REQUIREMENT_FLAGS}

        return QueryClassification(
            domain=domain,
            sub_domain=sub_domain,
            jurisdictions=jurisdictions,
            complexity=self._complexity(text, lowered, jurisdictions),
            keywords=self._keywords(lowered),
            confidence=self._confidence(text, domain),
            rules_version=r.version,
            **flags,
        )

    def _complexity(self, text: str, lowered: str, jurisdictions: Tuple[str, ...]) -> Complexity:
        w = self.rules.complexity
        score = 0

        length = len(text)
        if length > w.get("long_text_chars", 200):
            score += w.get("long_text_points", 2)
        elif length > w.get("medium_text_chars", 100):
            score += w.get("medium_text_points", 1)

        extra_questions = text.count("?") - 1
        if extra_questions > 0:
            score += extra_questions * w.get("extra_question_points", 1)

        if _matches(self.rules.technical_terms, lowered):
            score += w.get("technical_term_points", 2)

        conjunctions = len(self.rules.conjunctions.findall(lowered)) if self.rules.conjunctions else 0
        if len(jurisdictions) > 1 or conjunctions > 1:
            score += w.get("multi_jurisdiction_points", 1)

        if score < w.get("moderate_at", 1):
            return Complexity.SIMPLE
        if score < w.get("complex_at", 3):
            return Complexity.MODERATE
        if score < w.get("expert_at", 5):
            return Complexity.COMPLEX
        return Complexity.EXPERT

    def _confidence(self, text: str, domain: Domain) -> float:
        c = self.rules.confidence
        if len(text.strip()) < c.get("short_text_chars", 10):
            return float(c.get("short_text", 0.4))
        if domain is self.rules.default_domain:
            return float(c.get("default_domain", 0.6))
        return float(c.get("matched_domain", 0.85))

    def _keywords(self, lowered: str) -> Tuple[str, ...]:
        seen: List[str] = []
        for word in _WORD_RE.findall(lowered):
            word = word.strip("'-")
            if len(word) < self.rules.min_keyword_length or word in self.rules.stop_words or word in seen:
                continue
            seen.append(word)
            if len(seen) >= self.rules.max_keywords:
                break
        return tuple(seen)
