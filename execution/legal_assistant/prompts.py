"""
Prompt Assembly for the Legal Study Assistant

Renders the fixed instruction policy, one numbered block per retrieved
document, and the student's question into a single prompt. Rendering is
deterministic: the same documents and question always produce the same text.
"""

import logging
from typing import Sequence

from .models import ScoredDocument

logger = logging.getLogger(__name__)


DISCLAIMERS = {
    "en": "This is academic material and does not constitute professional legal advice.",
    "es": "Esto es material académico y no constituye asesoría jurídica profesional.",
}

NO_EVIDENCE_PHRASES = {
    "en": "With the available information I cannot give a legally precise answer to this question.",
    "es": "Con la información disponible no puedo fundamentar con precisión jurídica esta respuesta.",
}


PROMPT_TEMPLATES = {
    "en": {
        "system": """You are an academic legal assistant for law students.

Rules:
1. GROUNDING: Answer strictly from the CONTEXT blocks below. Never invent articles, laws or case names. If the context is not enough, say exactly: "{no_evidence}"
2. CITATIONS: Cite every legal basis you use, in the form "According to [legal reference], ...".
3. STRUCTURE: Start with a short summary, then an extended explanation, then a practical example.
4. DISCLAIMER: End your answer with: "{disclaimer}"
""",
        "context_header": "## Context",
        "context_block": "CONTEXT {n}:\n[Source: {source}]\n{reference_line}{materia_line}\nOriginal question: {question}\nAnswer: {answer}\n\n---\n",
        "reference_line": "Legal reference: {value}\n",
        "materia_line": "Subject: {value}\n",
        "question_header": "## Student Question",
        "answer_header": "## Your Answer",
        "final_instruction": "Answer the student's question using only the context above, following all the rules.",
        "insufficient": """You are an academic legal assistant for law students.

No relevant context was found in the reference corpus for the question below.

## Student Question
{question}

## Your Answer
State clearly that the available reference material does not cover this question and that you cannot give a grounded legal answer. Do not cite any article or law. Suggest that the student rephrase the question with more specific legal terms or consult their professor.
End your answer with: "{disclaimer}"
""",
    },
    "es": {
        "system": """Eres un asistente jurídico académico para estudiantes de Derecho.

Reglas:
1. FUNDAMENTACIÓN: Responde estrictamente con base en los bloques de CONTEXTO. Nunca inventes artículos, leyes ni criterios. Si el contexto no basta, di exactamente: "{no_evidence}"
2. CITAS: Cita siempre el fundamento legal, en la forma "De acuerdo con el [referencia legal], ...".
3. ESTRUCTURA: Comienza con un resumen breve, luego una explicación extendida y después un ejemplo práctico.
4. AVISO: Termina tu respuesta con: "{disclaimer}"
""",
        "context_header": "## Contexto",
        "context_block": "CONTEXTO {n}:\n[Fuente: {source}]\n{reference_line}{materia_line}\nPregunta original: {question}\nRespuesta: {answer}\n\n---\n",
        "reference_line": "Referencia legal: {value}\n",
        "materia_line": "Materia: {value}\n",
        "question_header": "## Pregunta del Estudiante",
        "answer_header": "## Tu Respuesta",
        "final_instruction": "Responde la pregunta del estudiante usando solo el contexto anterior y siguiendo todas las reglas.",
        "insufficient": """Eres un asistente jurídico académico para estudiantes de Derecho.

No se encontró contexto relevante en el corpus de referencia para la siguiente pregunta.

## Pregunta del Estudiante
{question}

## Tu Respuesta
Indica claramente que el material de referencia disponible no cubre esta pregunta y que no puedes dar una respuesta jurídica fundamentada. No cites ningún artículo ni ley. Sugiere al estudiante reformular la pregunta con términos jurídicos más específicos o consultar a su profesor.
Termina tu respuesta con: "{disclaimer}"
""",
    },
}


class PromptBuilder:
    """Builds grounded and insufficient-evidence prompts for one language."""

    def __init__(self, language: str = "en"):
        if language not in PROMPT_TEMPLATES:
            logger.warning(f"No prompt templates for '{language}', falling back to English")
            language = "en"
        self.language = language
        self._templates = PROMPT_TEMPLATES[language]

    @property
    def disclaimer(self) -> str:
        return DISCLAIMERS[self.language]

    def build(self, question: str, documents: Sequence[ScoredDocument]) -> str:
        """
        Render the grounded prompt.

        Args:
            question: The student's question
            documents: Retrieved documents in ranking order

        Returns:
            Prompt text
        """
        t = self._templates
        parts = [
            t["system"].format(
                no_evidence=NO_EVIDENCE_PHRASES[self.language],
                disclaimer=self.disclaimer,
            ),
            t["context_header"],
            "",
        ]
        for n, scored in enumerate(documents, start=1):
            parts.append(self._context_block(n, scored))
        parts.extend([
            t["question_header"],
            question.strip(),
            "",
            t["answer_header"],
            t["final_instruction"],
        ])
        return "\n".join(parts)

    def build_insufficient(self, question: str) -> str:
        """Render the reduced prompt used when no evidence was retrieved."""
        return self._templates["insufficient"].format(
            question=question.strip(),
            disclaimer=self.disclaimer,
        )

    def _context_block(self, n: int, scored: ScoredDocument) -> str:
        t = self._templates
        doc = scored.document
        reference_line = (
            t["reference_line"].format(value=doc.law_reference) if doc.law_reference else ""
        )
        materia_line = t["materia_line"].format(value=doc.materia) if doc.materia else ""
        return t["context_block"].format(
            n=n,
            source=doc.source,
            reference_line=reference_line,
            materia_line=materia_line,
            question=doc.question,
            answer=doc.answer,
        )
