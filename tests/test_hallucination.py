"""
Tests for execution/legal_assistant/hallucination.py

Covers: article extraction (English/Spanish, bis/ter), instrument
        extraction, context matching, warning de-duplication, and the
        never-raises contract of HallucinationValidator.validate().
"""

from unittest.mock import patch

import pytest

from tests.conftest import make_document


@pytest.fixture
def validator():
    from execution.legal_assistant.hallucination import HallucinationValidator
    return HallucinationValidator()


@pytest.fixture
def article_15_context():
    return [make_document(
        "lft-15",
        "¿Qué regula el artículo 15?",
        "The Article 15 regulates the obligations of intermediaries.",
        law_reference="Artículo 15 de la Ley Federal del Trabajo",
    )]


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

class TestExtractArticles:
    def test_english_and_spanish_forms(self):
        from execution.legal_assistant.hallucination import extract_articles
        text = "Article 103, artículo 14 bis, Art. 27 and Artículos 1796."
        assert extract_articles(text) == ["103", "14 bis", "27", "1796"]

    def test_ter_and_letter_suffix(self):
        from execution.legal_assistant.hallucination import extract_articles
        assert extract_articles("See Artículo 41 ter and article 2a.") == ["41 ter", "2a"]

    def test_no_articles(self):
        from execution.legal_assistant.hallucination import extract_articles
        assert extract_articles("Contracts are perfected by consent.") == []
        assert extract_articles("") == []


class TestExtractInstruments:
    def test_capitalised_name(self):
        from execution.legal_assistant.hallucination import extract_instruments
        found = extract_instruments(
            "según la Constitución Política de los Estados Unidos Mexicanos, el amparo procede"
        )
        assert found == ["Constitución Política de los Estados Unidos Mexicanos"]

    def test_bare_keyword_ignored(self):
        from execution.legal_assistant.hallucination import extract_instruments
        assert extract_instruments("the law is clear on this point") == []


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestHallucinationValidator:
    """Tests for HallucinationValidator.validate()."""

    def test_unsupported_article_warns(self, validator, article_15_context):
        result = validator.validate("According to Article 99, the employer must pay.", article_15_context)
        assert result.is_valid is False
        assert result.warnings == [
            "Possible hallucination: 'Article 99' is cited but does not appear in the provided context"
        ]

    def test_supported_article_valid(self, validator, article_15_context):
        result = validator.validate("Under Artículo 15, intermediaries are liable.", article_15_context)
        assert result.is_valid is True
        assert result.has_warnings is False

    def test_mixed_citations_one_warning(self, validator, article_15_context):
        result = validator.validate("Article 15 applies, and Article 99 too.", article_15_context)
        assert result.is_valid is False
        assert len(result.warnings) == 1
        assert "'Article 99'" in result.warnings[0]

    def test_duplicate_citation_warned_once(self, validator, article_15_context):
        result = validator.validate("Article 99 says so. Again, article 99.", article_15_context)
        assert len(result.warnings) == 1

    def test_article_from_answer_text_counts(self, validator, sample_documents):
        # Article 367 appears in the answer body as well as the law reference
        result = validator.validate("Robbery is defined in Article 367.", sample_documents)
        assert result.is_valid is True

    def test_substring_match_is_loose(self, validator, article_15_context):
        # "5" is contained in "15"
        assert validator.validate("Article 5 applies.", article_15_context).is_valid is True

    def test_no_citations_is_valid(self, validator, sample_documents):
        assert validator.validate("Amparo protects human rights.", sample_documents).is_valid is True

    def test_unknown_instrument_does_not_warn(self, validator, article_15_context):
        result = validator.validate(
            "The Código Fiscal de la Federación governs taxes.", article_15_context
        )
        assert result.is_valid is True
        assert result.warnings == []

    def test_empty_context_flags_every_article(self, validator):
        result = validator.validate("Article 1 and Article 2.", [])
        assert len(result.warnings) == 2

    def test_never_raises(self, validator, article_15_context):
        with patch(
            "execution.legal_assistant.hallucination.extract_articles",
            side_effect=RuntimeError("regex engine exploded"),
        ):
            result = validator.validate("Article 15", article_15_context)
        assert result.is_valid is False
        assert result.warnings == ["Citation validation could not be completed"]


class TestContextReferences:
    def test_collects_references_and_cited_articles(self, sample_documents):
        from execution.legal_assistant.hallucination import HallucinationValidator
        refs = HallucinationValidator.context_references(sample_documents[:1])
        assert refs == ["Artículo 103 de la Constitución Política", "103"]
