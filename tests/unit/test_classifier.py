"""
Query classifier tests.

The keyword tables are walked straight from config/classifier_rules.yaml so
every shipped keyword is exercised; the remaining tests pin down complexity
scoring, confidence and the degraded path.
"""
import dataclasses

import pytest
import yaml

from graph.classifier import (
    REQUIREMENT_FLAGS, ClassifierRules, Complexity, Domain, QueryClassifier, keyword_pattern, load_rules,
)
from graph.config import DEFAULT_RULES_PATH, load_yaml

RULES_DATA = load_yaml(DEFAULT_RULES_PATH)

DOMAIN_CASES = [(d["name"], kw) for d in RULES_DATA["domains"] for kw in d["keywords"]]
SUB_DOMAIN_CASES = [
    (domain, sub["name"], kw)
    for domain, subs in RULES_DATA["sub_domains"].items()
    for sub in subs
    for kw in sub["keywords"]
]
JURISDICTION_CASES = [(name, kw) for name, kws in RULES_DATA["jurisdictions"].items() for kw in kws]
REQUIREMENT_CASES = [(flag, kw) for flag, kws in RULES_DATA["requirements"].items() for kw in kws]


class TestKeywordTables:
    @pytest.mark.parametrize("domain,keyword", DOMAIN_CASES)
    def test_every_domain_keyword_selects_its_domain(self, classifier, domain, keyword):
        result = classifier.classify(f"Question about {keyword} please")
        assert result.domain == Domain(domain)

    @pytest.mark.parametrize("domain,sub_domain,keyword", SUB_DOMAIN_CASES)
    def test_every_sub_domain_keyword(self, classifier, domain, sub_domain, keyword):
        text = f"tax question on {keyword}" if domain == "tax" else f"Question about {keyword} please"
        result = classifier.classify(text)
        assert result.domain == Domain(domain)
        assert result.sub_domain == sub_domain

    @pytest.mark.parametrize("jurisdiction,keyword", JURISDICTION_CASES)
    def test_every_jurisdiction_keyword(self, classifier, jurisdiction, keyword):
        result = classifier.classify(f"tax rules in {keyword}")
        assert jurisdiction in result.jurisdictions

    @pytest.mark.parametrize("term", RULES_DATA["technical_terms"])
    def test_every_technical_term_raises_complexity(self, classifier, term):
        assert classifier.classify(f"Define {term}.").complexity == Complexity.MODERATE

    @pytest.mark.parametrize("flag,keyword", REQUIREMENT_CASES)
    def test_every_requirement_keyword_sets_its_flag(self, classifier, flag, keyword):
        result = classifier.classify(f"Please help: {keyword}")
        assert getattr(result, flag) is True

    def test_all_requirement_sets_present(self):
        assert set(RULES_DATA["requirements"]) == set(REQUIREMENT_FLAGS)


class TestDomainSelection:
    def test_plain_vat_question(self, classifier):
        result = classifier.classify("What is VAT?")
        assert result.domain == Domain.TAX
        assert result.sub_domain == "indirect_tax"
        assert result.complexity == Complexity.SIMPLE
        assert result.jurisdictions == ()
        assert not any(getattr(result, flag) for flag in REQUIREMENT_FLAGS)
        assert result.confidence == pytest.approx(0.85)

    def test_priority_order_tax_beats_audit(self, classifier):
        assert classifier.classify("Audit of the tax provision").domain == Domain.TAX

    def test_plural_form_matches(self, classifier):
        assert classifier.classify("How are capital gains taxes handled?").domain == Domain.TAX

    def test_keyword_inside_another_word_does_not_match(self, classifier):
        # "sec" must not fire on "second"
        result = classifier.classify("Give me a second opinion on bookkeeping")
        assert result.domain == Domain.GENERAL_ACCOUNTING

    def test_unmatched_text_gets_default_domain(self, classifier):
        result = classifier.classify("Hello there, lovely weather outside")
        assert result.domain == Domain.GENERAL_ACCOUNTING
        assert result.sub_domain is None
        assert result.confidence == pytest.approx(0.6)

    def test_jurisdictions_ignored_for_default_domain(self, classifier):
        result = classifier.classify("Bookkeeping software popular in Canada")
        assert result.domain == Domain.GENERAL_ACCOUNTING
        assert result.jurisdictions == ()

    def test_multiple_jurisdictions_in_table_order(self, classifier):
        result = classifier.classify("Tax treatment in Canada versus the UK")
        assert result.jurisdictions == ("canada", "uk")


class TestComplexity:
    def test_medium_length_is_moderate(self, classifier):
        text = ("Explain payroll accrual entries " * 5).strip()
        assert 100 < len(text) <= 200
        assert classifier.classify(text).complexity == Complexity.MODERATE

    def test_long_text_with_technical_term_is_complex(self, classifier):
        text = "Explain goodwill impairment testing steps " * 6
        assert len(text) > 200
        assert classifier.classify(text).complexity == Complexity.COMPLEX

    def test_extra_questions_push_to_expert(self, classifier):
        text = "Explain goodwill impairment testing steps " * 6 + "Why? When? How?"
        assert classifier.classify(text).complexity == Complexity.EXPERT

    def test_two_jurisdictions_add_a_point(self, classifier):
        assert classifier.classify("Tax treatment in Canada versus the UK").complexity == Complexity.MODERATE

    def test_repeated_conjunctions_add_a_point(self, classifier):
        assert classifier.classify("accruals and deferrals and reversals").complexity == Complexity.MODERATE

    def test_single_conjunction_is_not_multi_jurisdiction(self, classifier):
        assert classifier.classify("accruals and deferrals").complexity == Complexity.SIMPLE


class TestKeywordsAndConfidence:
    def test_keywords_skip_stop_words_and_short_words(self, classifier):
        result = classifier.classify("What is the corporate tax rate for Delaware companies")
        assert result.keywords == ("corporate", "rate", "delaware", "companies")

    def test_keywords_are_deduplicated_and_capped(self, classifier):
        words = " ".join(f"word{i}" for i in range(20))
        result = classifier.classify(f"ledger ledger {words}")
        assert result.keywords[0] == "ledger"
        assert result.keywords.count("ledger") == 1
        assert len(result.keywords) == 10

    def test_short_text_has_low_confidence(self, classifier):
        result = classifier.classify("VAT?")
        assert result.domain == Domain.TAX
        assert result.confidence == pytest.approx(0.4)

    def test_rules_version_is_stamped(self, classifier):
        assert classifier.classify("What is VAT?").rules_version == RULES_DATA["version"]


class TestTotalAndPure:
    @pytest.mark.parametrize("text", ["", "   ", None, 42])
    def test_unusable_input_degrades(self, classifier, text):
        result = classifier.classify(text)
        assert result.domain == Domain.GENERAL_ACCOUNTING
        assert result.complexity == Complexity.SIMPLE
        assert result.confidence == pytest.approx(0.4)

    def test_rule_failure_degrades_instead_of_raising(self, classifier, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("broken rule")

        monkeypatch.setattr(classifier, "_complexity", boom)
        result = classifier.classify("What is VAT?")
        assert result.domain == Domain.GENERAL_ACCOUNTING
        assert result.confidence == pytest.approx(0.4)

    def test_same_text_same_result(self, classifier):
        text = "Compare transfer pricing rules in the USA and India for our subsidiary?"
        assert classifier.classify(text) == classifier.classify(text)
        assert QueryClassifier(classifier.rules).classify(text) == classifier.classify(text)

    def test_classification_is_immutable(self, classifier):
        result = classifier.classify("What is VAT?")
        with pytest.raises(dataclasses.FrozenInstanceError):
            result.domain = Domain.AUDIT

    def test_to_dict_is_json_friendly(self, classifier):
        data = classifier.classify("Tax treatment in Canada versus the UK").to_dict()
        assert data["domain"] == "tax"
        assert data["complexity"] == "moderate"
        assert data["jurisdictions"] == ["canada", "uk"]


class TestRuleLoading:
    def test_missing_requirement_set_rejected(self):
        data = dict(RULES_DATA)
        data["requirements"] = {k: v for k, v in RULES_DATA["requirements"].items() if k != "needs_research"}
        with pytest.raises(ValueError, match="needs_research"):
            ClassifierRules.from_dict(data)

    def test_rules_path_from_env(self, tmp_path, monkeypatch):
        data = dict(RULES_DATA)
        data["version"] = 99
        path = tmp_path / "rules.yaml"
        path.write_text(yaml.safe_dump(data))
        monkeypatch.setenv("CLASSIFIER_RULES", str(path))
        assert load_rules().version == 99

    def test_multi_word_keyword_tolerates_extra_spaces(self):
        pattern = keyword_pattern(["balance sheet"])
        assert pattern.search("the balance   sheet")
        assert not pattern.search("the balancesheet")

    def test_empty_keyword_list_has_no_pattern(self):
        assert keyword_pattern([]) is None
