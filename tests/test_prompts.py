"""
Tests for execution/legal_assistant/prompts.py

Covers: grounded prompt layout, numbered context blocks, optional
        metadata lines, language selection, and the insufficient-evidence prompt.
"""

from tests.conftest import make_document


def _scored(documents, score=0.9):
    from execution.legal_assistant.models import ScoredDocument
    return [ScoredDocument(document=d, score=score) for d in documents]


class TestPromptBuilder:
    """Tests for PromptBuilder.build()."""

    def test_numbered_blocks_in_ranking_order(self, sample_documents):
        from execution.legal_assistant.prompts import PromptBuilder
        prompt = PromptBuilder("en").build("What is amparo?", _scored(sample_documents))

        first = prompt.index("CONTEXT 1:")
        second = prompt.index("CONTEXT 2:")
        third = prompt.index("CONTEXT 3:")
        assert first < second < third
        assert "Legal reference: Artículo 103 de la Constitución Política" in prompt[first:second]
        assert "Subject: Penal" in prompt[second:third]

    def test_contains_policy_question_and_disclaimer(self, sample_documents):
        from execution.legal_assistant.prompts import DISCLAIMERS, PromptBuilder
        prompt = PromptBuilder("en").build("  What is amparo?  ", _scored(sample_documents[:1]))

        assert "Never invent articles" in prompt
        assert DISCLAIMERS["en"] in prompt
        assert "## Student Question\nWhat is amparo?\n" in prompt
        assert prompt.rstrip().endswith("following all the rules.")

    def test_optional_lines_omitted(self):
        from execution.legal_assistant.prompts import PromptBuilder
        doc = make_document("bare", "¿Qué es la posesión?", "La posesión es el poder de hecho.")
        prompt = PromptBuilder("en").build("What is possession?", _scored([doc]))

        assert "Legal reference:" not in prompt
        assert "Subject:" not in prompt
        assert "Answer: La posesión es el poder de hecho." in prompt

    def test_deterministic(self, sample_documents):
        from execution.legal_assistant.prompts import PromptBuilder
        builder = PromptBuilder("en")
        docs = _scored(sample_documents)
        assert builder.build("Q?", docs) == builder.build("Q?", docs)

    def test_spanish_templates(self, sample_documents):
        from execution.legal_assistant.prompts import DISCLAIMERS, PromptBuilder
        prompt = PromptBuilder("es").build("¿Qué es el amparo?", _scored(sample_documents[:1]))
        assert "CONTEXTO 1:" in prompt
        assert "[Fuente: Barcenas-Juridico-Mexicano-Dataset]" in prompt
        assert DISCLAIMERS["es"] in prompt

    def test_unknown_language_falls_back(self):
        from execution.legal_assistant.prompts import PromptBuilder
        assert PromptBuilder("de").language == "en"


class TestInsufficientPrompt:
    def test_no_context_blocks(self):
        from execution.legal_assistant.prompts import DISCLAIMERS, PromptBuilder
        prompt = PromptBuilder("en").build_insufficient("What is the statute of Mars?")

        assert "CONTEXT" not in prompt
        assert "No relevant context was found" in prompt
        assert "What is the statute of Mars?" in prompt
        assert DISCLAIMERS["en"] in prompt
