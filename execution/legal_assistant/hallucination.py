"""
Hallucination Validator

Cross-checks the legal citations in a generated answer against the
retrieved documents. Article numbers that cannot be traced to the context
produce warnings; named instruments (Constitution, Code, Law ...) are only
logged, since their names are commonly paraphrased.

The result is advisory. ``validate`` never raises.
"""

import re
import logging
from dataclasses import dataclass, field
from typing import Sequence

from .models import ReferenceDocument

logger = logging.getLogger(__name__)


# "Article 103", "Artículo 14 bis", "Art. 27", "artículos 1o"
ARTICLE_PATTERN = re.compile(
    r"\b(?:art[íi]culos?|articles?|arts?\.)\s*(\d+[a-z]?\b(?:\s+bis\b)?(?:\s+ter\b)?)",
    re.IGNORECASE,
)

INSTRUMENT_KEYWORD = re.compile(
    r"\b(Constitution|Code|Law|Constitución|Código|Ley)\b",
    re.IGNORECASE,
)

# Lowercase words allowed inside an instrument name
CONNECTORS = {
    "of", "the", "on", "for", "and",
    "de", "del", "la", "las", "los", "el", "para", "y", "en",
}

MIN_SHARED_TOKENS = 2
MIN_TOKEN_LENGTH = 4


@dataclass
class ValidationResult:
    """Outcome of validating one answer."""
    is_valid: bool
    warnings: list[str] = field(default_factory=list)

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)


def extract_articles(text: str) -> list[str]:
    """Article numbers cited in ``text``, in order of appearance."""
    if not text:
        return []
    return [" ".join(m.group(1).split()) for m in ARTICLE_PATTERN.finditer(text)]


def extract_instruments(text: str) -> list[str]:
    """
    Named legal instruments cited in ``text``.

    An instrument is a keyword followed by a capitalised phrase, e.g.
    "Constitución Política de los Estados Unidos Mexicanos" or
    "Code of Civil Procedure". Bare keywords are ignored.
    """
    if not text:
        return []

    instruments = []
    for match in INSTRUMENT_KEYWORD.finditer(text):
        tokens = text[match.end():].split()
        name_tokens = []
        for token in tokens:
            word = token.strip(",.;:()\"'")
            if word and word[0].isupper():
                name_tokens.append(word)
            elif word.lower() in CONNECTORS:
                name_tokens.append(word)
            else:
                break
            if word != token:
                break
        while name_tokens and name_tokens[-1].lower() in CONNECTORS:
            name_tokens.pop()
        if name_tokens:
            instruments.append(f"{match.group(1)} {' '.join(name_tokens)}")
    return instruments


class HallucinationValidator:
    """Validates generated answers against retrieved evidence."""

    def validate(self, answer: str, documents: Sequence[ReferenceDocument]) -> ValidationResult:
        """
        Check every citation in ``answer`` against ``documents``.

        Args:
            answer: Generated answer text
            documents: Documents the answer was generated from

        Returns:
            ValidationResult, valid when no article citation is unsupported
        """
        try:
            return self._validate(answer or "", documents)
        except Exception:
            logger.exception("Hallucination validation failed; treating answer as unvalidated")
            return ValidationResult(
                is_valid=False,
                warnings=["Citation validation could not be completed"],
            )

    def _validate(self, answer: str, documents: Sequence[ReferenceDocument]) -> ValidationResult:
        context_refs = self.context_references(documents)
        warnings = []
        seen = set()

        for article in extract_articles(answer):
            key = article.lower()
            if key in seen:
                continue
            seen.add(key)
            if not _in_context(article, context_refs):
                warning = (
                    f"Possible hallucination: 'Article {article}' is cited "
                    f"but does not appear in the provided context"
                )
                warnings.append(warning)
                logger.warning(warning)

        for instrument in extract_instruments(answer):
            if not _shares_keywords(instrument, context_refs):
                logger.debug(f"Instrument not found in context (may be a paraphrase): {instrument}")

        is_valid = not warnings
        logger.info(f"Validation complete. Valid: {is_valid}, Warnings: {len(warnings)}")
        return ValidationResult(is_valid=is_valid, warnings=warnings)

    @staticmethod
    def context_references(documents: Sequence[ReferenceDocument]) -> list[str]:
        """Stored legal references plus article numbers cited in each answer."""
        refs = []
        for doc in documents:
            if doc.law_reference and doc.law_reference.strip():
                refs.append(doc.law_reference)
            refs.extend(extract_articles(doc.answer))
        return refs


def _in_context(reference: str, context_refs: list[str]) -> bool:
    needle = reference.lower().strip()
    return any(needle in ref.lower().strip() for ref in context_refs)


def _shares_keywords(instrument: str, context_refs: list[str]) -> bool:
    words = {w for w in instrument.lower().split() if len(w) >= MIN_TOKEN_LENGTH}
    for ref in context_refs:
        if len(words & set(ref.lower().split())) >= MIN_SHARED_TOKENS:
            return True
    return False
