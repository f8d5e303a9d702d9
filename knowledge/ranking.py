"""
Free-text relevance for knowledge articles.

Tokens are lower-cased and accent-folded ("Cómo" → "como") so Spanish
queries typed without accents still match. The ranker is a pluggable
collaborator; LexicalRanker is the built-in token-overlap scorer.
"""
from __future__ import annotations

import re
import unicodedata
from typing import Iterable, Protocol

from models.schemas import KnowledgeArticle

_WORD = re.compile(r"[a-z0-9]+")

STOPWORDS = frozenset({
    # es
    "a", "al", "como", "con", "cual", "cuando", "de", "del", "donde", "el", "en",
    "es", "esta", "este", "hay", "la", "las", "lo", "los", "me", "mi", "mis",
    "para", "por", "puedo", "que", "se", "si", "su", "sus", "tu", "tus", "un",
    "una", "y", "yo",
    # en
    "an", "and", "are", "can", "do", "does", "for", "how", "i", "is", "it", "my",
    "of", "on", "or", "the", "to", "what", "where", "with",
})


def fold(text: str) -> str:
    """Lower-case and strip diacritics."""
    decomposed = unicodedata.normalize("NFKD", text.lower())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def tokenize(text: str) -> list[str]:
    return [t for t in _WORD.findall(fold(text or "")) if t not in STOPWORDS]


def phrase_hits(phrases: Iterable[str], query_tokens: set[str]) -> list[str]:
    """Phrases (keywords, tags) whose every token appears in the query."""
    hits = []
    for phrase in phrases:
        tokens = tokenize(phrase)
        if tokens and all(t in query_tokens for t in tokens):
            hits.append(phrase)
    return hits


class Ranker(Protocol):
    def score(self, query_tokens: set[str], article: KnowledgeArticle) -> float:
        ...


class LexicalRanker:
    """Distinct query tokens found in the title, summary and body, weighted by field."""

    def __init__(self, title_weight: float = 3.0, summary_weight: float = 2.0, content_weight: float = 1.0):
        self.title_weight = title_weight
        self.summary_weight = summary_weight
        self.content_weight = content_weight

    def score(self, query_tokens: set[str], article: KnowledgeArticle) -> float:
        if not query_tokens:
            return 0.0
        title = set(tokenize(article.title))
        summary = set(tokenize(article.summary or ""))
        content = set(tokenize(article.content))
        return (
            self.title_weight * len(query_tokens & title)
            + self.summary_weight * len(query_tokens & summary)
            + self.content_weight * len(query_tokens & content)
        )
