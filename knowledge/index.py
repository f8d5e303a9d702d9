"""
Knowledge Base Index: ranked retrieval over published help articles.

Eligibility (every read path):
  - status == published
  - article targets the caller's role, or targets "anonymous" (universal)
  - article language == requested language; when no eligible article
    exists in that language the fallback language is used instead

Ranking:
  score = 2 · keyword hits + 1 · tag hits + ranker relevance
  ties → higher helpful ratio, then most recently updated
  zero-score articles are never returned

Counters (views, helpful votes) are bumped outside the read path and
never decrease.
"""
from __future__ import annotations

import structlog
from typing import Optional

from database.store_base import BaseStore
from knowledge.ranking import LexicalRanker, Ranker, phrase_hits, tokenize
from models.errors import KnowledgeUnavailable, ValidationFailed
from models.schemas import ArticleStatus, KnowledgeArticle, SearchResult, UserRole

logger = structlog.get_logger()

KEYWORD_WEIGHT = 2.0
TAG_WEIGHT = 1.0


def _rank_key(result: SearchResult):
    return (-result.score, -result.article.helpful_ratio, -result.article.updated_at.timestamp())


class KnowledgeBaseIndex:
    """
    Usage:
        index = KnowledgeBaseIndex(store)
        results = await index.search("¿cómo obtengo mi certificado?", UserRole.STUDENT, "es")
        results = await index.lookup_by_intent("get_certificate", UserRole.STUDENT, "es")
    """

    def __init__(
        self,
        store: BaseStore,
        ranker: Optional[Ranker] = None,
        fallback_language: str = "es",
        default_limit: int = 5,
    ):
        self._store = store
        self._ranker = ranker or LexicalRanker()
        self.fallback_language = fallback_language
        self.default_limit = default_limit

    # ── Retrieval ─────────────────────────────────────

    async def search(
        self,
        query: str,
        role: UserRole,
        language: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[SearchResult]:
        """Ranked free-text search. Raises KnowledgeUnavailable when the store or ranker fails."""
        limit = limit or self.default_limit
        query_tokens = set(tokenize(query))
        if not query_tokens:
            return []

        articles = await self._eligible(role, language)
        results = self._score_all(articles, query_tokens)
        results = sorted((r for r in results if r.score > 0), key=_rank_key)[:limit]
        logger.debug("kb_search",
                     query=query, role=role.value, language=language,
                     candidates=len(articles), hits=len(results))
        return results

    async def lookup_by_intent(
        self,
        intent: str,
        role: UserRole,
        language: Optional[str] = None,
        query: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[SearchResult]:
        """Exact intent-trigger match first, free-text search second."""
        limit = limit or self.default_limit
        wanted = intent.strip().lower()
        articles = await self._eligible(role, language)
        matched = [
            a for a in articles
            if wanted in (t.strip().lower() for t in a.intent_triggers)
        ]
        if matched:
            query_tokens = set(tokenize(query or ""))
            if query_tokens:
                results = self._score_all(matched, query_tokens)
            else:
                results = [SearchResult(article=a, score=0.0) for a in matched]
            results.sort(key=_rank_key)
            logger.debug("kb_intent_match", intent=intent, hits=len(results))
            return results[:limit]

        return await self.search(query or intent.replace("_", " "), role, language, limit)

    async def get_by_slug(self, slug: str) -> Optional[KnowledgeArticle]:
        article = await self._load(lambda: self._store.get_article_by_slug(slug))
        if article is None or article.status != ArticleStatus.PUBLISHED:
            return None
        return article

    async def list_by_category(
        self, category: str, role: UserRole, language: Optional[str] = None,
    ) -> list[KnowledgeArticle]:
        articles = await self._eligible(role, language)
        return sorted(
            (a for a in articles if a.category == category),
            key=lambda a: a.title,
        )

    async def popular(
        self, role: UserRole, language: Optional[str] = None, limit: int = 5,
    ) -> list[KnowledgeArticle]:
        articles = await self._eligible(role, language)
        articles.sort(key=lambda a: (-a.view_count, -a.helpful_ratio))
        return articles[:limit]

    # ── Authoring ─────────────────────────────────────

    async def create_article(self, article: KnowledgeArticle) -> KnowledgeArticle:
        """Store a new article. Slugs are unique; counters always start at zero."""
        if not article.slug.strip() or not article.title.strip() or not article.content.strip():
            raise ValidationFailed("slug, title and content are required")
        if await self._store.get_article_by_slug(article.slug) is not None:
            raise ValidationFailed(f"Article slug '{article.slug}' already exists")
        article = article.model_copy(update={"view_count": 0, "helpful_count": 0, "not_helpful_count": 0})
        article = await self._store.upsert_article(article)
        logger.info("kb_article_created", article_id=article.id, slug=article.slug,
                    status=article.status.value, language=article.language)
        return article

    # ── Counters ──────────────────────────────────────

    async def record_view(self, article_id: str) -> None:
        await self._store.increment_article_counters(article_id, views=1)

    async def record_feedback(self, article_id: str, helpful: bool) -> None:
        if helpful:
            await self._store.increment_article_counters(article_id, helpful=1)
        else:
            await self._store.increment_article_counters(article_id, not_helpful=1)
        logger.info("kb_article_feedback", article_id=article_id, helpful=helpful)

    # ── Internals ─────────────────────────────────────

    async def _eligible(self, role: UserRole, language: Optional[str]) -> list[KnowledgeArticle]:
        published = await self._load(lambda: self._store.list_articles(published_only=True))
        permitted = [a for a in published if a.permits_role(role)]
        language = language or self.fallback_language
        in_language = [a for a in permitted if a.language == language]
        if in_language or language == self.fallback_language:
            return in_language
        logger.debug("kb_language_fallback", requested=language, fallback=self.fallback_language)
        return [a for a in permitted if a.language == self.fallback_language]

    @staticmethod
    async def _load(fetch):
        try:
            return await fetch()
        except Exception as e:
            logger.error("kb_store_unavailable", error=str(e))
            raise KnowledgeUnavailable(f"knowledge store failed: {e}") from e

    def _score_all(self, articles: list[KnowledgeArticle], query_tokens: set[str]) -> list[SearchResult]:
        try:
            return [self._score(a, query_tokens) for a in articles]
        except Exception as e:
            logger.error("kb_ranker_failed", error=str(e))
            raise KnowledgeUnavailable(f"ranker failed: {e}") from e

    def _score(self, article: KnowledgeArticle, query_tokens: set[str]) -> SearchResult:
        keyword_hits = phrase_hits(article.keywords, query_tokens)
        tag_hits = phrase_hits(article.tags, query_tokens)
        relevance = self._ranker.score(query_tokens, article)
        score = KEYWORD_WEIGHT * len(keyword_hits) + TAG_WEIGHT * len(tag_hits) + relevance
        return SearchResult(article=article, score=score, matched_keywords=keyword_hits)
