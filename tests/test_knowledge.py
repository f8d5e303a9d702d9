"""
Tests for knowledge base retrieval.

Coverage:
  - Accent-folded tokenization and stopwords
  - Ranked search over the seeded Spanish articles
  - Role and status eligibility, language fallback
  - Intent-trigger lookup with free-text fallback
  - Tie-breaking, counters, popularity
  - Store and ranker failures surface as KnowledgeUnavailable
  - Article authoring: unique slugs, counters start at zero
"""
import pytest
from datetime import timedelta

from knowledge import KnowledgeBaseIndex, fold, tokenize
from knowledge.ranking import LexicalRanker, phrase_hits
from models.errors import KnowledgeUnavailable, ValidationFailed
from models.schemas import ArticleStatus, KnowledgeArticle, UserRole, utcnow


def _article(slug, **kw):
    defaults = dict(
        title=f"Artículo {slug}", content="Contenido general", category="general",
        status=ArticleStatus.PUBLISHED, language="es",
    )
    defaults.update(kw)
    return KnowledgeArticle(slug=slug, **defaults)


class TestTokenize:
    def test_fold_strips_accents(self):
        assert fold("¿Cómo Obtengo?") == "¿como obtengo?"

    def test_stopwords_dropped(self):
        assert tokenize("¿Cómo obtengo mi certificado?") == ["obtengo", "certificado"]
        assert tokenize("how do I reset my password") == ["reset", "password"]

    def test_empty(self):
        assert tokenize("") == []
        assert tokenize(None) == []

    def test_phrase_hits_need_every_token(self):
        assert phrase_hits(["crear curso", "publicar"], {"crear", "curso"}) == ["crear curso"]
        assert phrase_hits(["crear curso"], {"crear"}) == []


class TestLexicalRanker:
    def test_field_weights(self):
        article = _article("x", title="certificado", summary="certificado", content="certificado")
        assert LexicalRanker().score({"certificado"}, article) == 6.0

    def test_no_overlap(self):
        assert LexicalRanker().score({"zzz"}, _article("x")) == 0.0


class TestSearch:
    @pytest.mark.asyncio
    async def test_certificate_question(self, seeded_store):
        index = KnowledgeBaseIndex(seeded_store)
        results = await index.search("¿Cómo obtengo mi certificado?", UserRole.STUDENT, "es")
        assert results[0].article.slug == "obtener-certificado"
        assert "certificado" in results[0].matched_keywords

    @pytest.mark.asyncio
    async def test_unaccented_query_matches(self, seeded_store):
        index = KnowledgeBaseIndex(seeded_store)
        results = await index.search("como me registro en la plataforma", UserRole.ANONYMOUS, "es")
        assert results[0].article.slug == "como-registrarse"

    @pytest.mark.asyncio
    async def test_role_filtering(self, seeded_store):
        index = KnowledgeBaseIndex(seeded_store)
        assert await index.search("certificado diploma", UserRole.INSTRUCTOR, "es") == []
        assert await index.search("certificado diploma", UserRole.ANONYMOUS, "es") == []
        assert (await index.search("crear curso", UserRole.INSTRUCTOR, "es"))[0].article.slug == "crear-curso-instructor"

    @pytest.mark.asyncio
    async def test_universal_articles_visible_to_every_role(self, seeded_store):
        index = KnowledgeBaseIndex(seeded_store)
        for role in UserRole:
            results = await index.search("registrarse", role, "es")
            assert [r.article.slug for r in results] == ["como-registrarse"]

    @pytest.mark.asyncio
    async def test_zero_scores_excluded(self, seeded_store):
        index = KnowledgeBaseIndex(seeded_store)
        assert await index.search("xyzzy plugh", UserRole.STUDENT, "es") == []

    @pytest.mark.asyncio
    async def test_stopword_only_query(self, seeded_store):
        index = KnowledgeBaseIndex(seeded_store)
        assert await index.search("de la que", UserRole.STUDENT, "es") == []

    @pytest.mark.asyncio
    async def test_limit(self, seeded_store):
        index = KnowledgeBaseIndex(seeded_store)
        results = await index.search("completado progreso certificado", UserRole.STUDENT, "es", limit=1)
        assert len(results) == 1

    @pytest.mark.asyncio
    async def test_drafts_never_returned(self, store):
        await store.upsert_article(_article("borrador", keywords=["certificado"], status=ArticleStatus.DRAFT))
        index = KnowledgeBaseIndex(store)
        assert await index.search("certificado", UserRole.ANONYMOUS, "es") == []
        assert await index.get_by_slug("borrador") is None


class TestLanguage:
    @pytest.mark.asyncio
    async def test_falls_back_when_language_has_no_articles(self, seeded_store):
        index = KnowledgeBaseIndex(seeded_store, fallback_language="es")
        results = await index.search("certificado", UserRole.STUDENT, "en")
        assert results[0].article.slug == "obtener-certificado"

    @pytest.mark.asyncio
    async def test_requested_language_preferred(self, seeded_store):
        await seeded_store.upsert_article(_article(
            "get-certificate", title="How do I get my certificate?", keywords=["certificate", "certificado"],
            language="en", target_roles=[UserRole.STUDENT],
        ))
        index = KnowledgeBaseIndex(seeded_store)
        results = await index.search("certificado", UserRole.STUDENT, "en")
        assert [r.article.slug for r in results] == ["get-certificate"]

    @pytest.mark.asyncio
    async def test_default_language(self, seeded_store):
        index = KnowledgeBaseIndex(seeded_store)
        assert await index.search("certificado", UserRole.STUDENT)


class TestRanking:
    @pytest.mark.asyncio
    async def test_keywords_outweigh_tags(self, store):
        await store.upsert_article(_article("tagged", tags=["matricula"]))
        await store.upsert_article(_article("keyworded", keywords=["matricula"]))
        results = await KnowledgeBaseIndex(store).search("matricula", UserRole.ANONYMOUS, "es")
        assert [r.article.slug for r in results] == ["keyworded", "tagged"]
        assert results[0].score == 2.0
        assert results[1].score == 1.0

    @pytest.mark.asyncio
    async def test_tie_broken_by_helpful_ratio(self, store):
        await store.upsert_article(_article("meh", keywords=["pago"], helpful_count=1, not_helpful_count=3))
        await store.upsert_article(_article("good", keywords=["pago"], helpful_count=9, not_helpful_count=1))
        results = await KnowledgeBaseIndex(store).search("pago", UserRole.ANONYMOUS, "es")
        assert [r.article.slug for r in results] == ["good", "meh"]

    @pytest.mark.asyncio
    async def test_then_most_recently_updated(self, store):
        now = utcnow()
        await store.upsert_article(_article("old", keywords=["pago"], updated_at=now - timedelta(days=3)))
        await store.upsert_article(_article("new", keywords=["pago"], updated_at=now))
        results = await KnowledgeBaseIndex(store).search("pago", UserRole.ANONYMOUS, "es")
        assert [r.article.slug for r in results] == ["new", "old"]


class TestIntentLookup:
    @pytest.mark.asyncio
    async def test_trigger_match(self, seeded_store):
        index = KnowledgeBaseIndex(seeded_store)
        results = await index.lookup_by_intent("get_certificate", UserRole.STUDENT, "es")
        assert [r.article.slug for r in results] == ["obtener-certificado"]

    @pytest.mark.asyncio
    async def test_trigger_match_is_case_insensitive(self, seeded_store):
        index = KnowledgeBaseIndex(seeded_store)
        results = await index.lookup_by_intent("Create_Course", UserRole.INSTRUCTOR, "es")
        assert results[0].article.slug == "crear-curso-instructor"

    @pytest.mark.asyncio
    async def test_trigger_respects_role(self, seeded_store):
        index = KnowledgeBaseIndex(seeded_store)
        assert await index.lookup_by_intent("create_course", UserRole.STUDENT, "es") == []

    @pytest.mark.asyncio
    async def test_unknown_intent_falls_back_to_query(self, seeded_store):
        index = KnowledgeBaseIndex(seeded_store)
        results = await index.lookup_by_intent("something_else", UserRole.STUDENT, "es", query="ver mi progreso")
        assert results[0].article.slug == "ver-progreso"


class TestCounters:
    @pytest.mark.asyncio
    async def test_views_and_popularity(self, seeded_store):
        index = KnowledgeBaseIndex(seeded_store)
        progress = await seeded_store.get_article_by_slug("ver-progreso")
        await index.record_view(progress.id)
        await index.record_view(progress.id)
        popular = await index.popular(UserRole.STUDENT, "es", limit=2)
        assert popular[0].slug == "ver-progreso"
        assert popular[0].view_count == 2
        assert len(popular) == 2

    @pytest.mark.asyncio
    async def test_feedback_counts(self, seeded_store):
        index = KnowledgeBaseIndex(seeded_store)
        cert = await seeded_store.get_article_by_slug("obtener-certificado")
        await index.record_feedback(cert.id, helpful=True)
        await index.record_feedback(cert.id, helpful=True)
        await index.record_feedback(cert.id, helpful=False)
        cert = await seeded_store.get_article(cert.id)
        assert cert.helpful_count == 2
        assert cert.not_helpful_count == 1

    @pytest.mark.asyncio
    async def test_list_by_category(self, seeded_store):
        index = KnowledgeBaseIndex(seeded_store)
        articles = await index.list_by_category("estudiante", UserRole.STUDENT, "es")
        assert [a.slug for a in articles] == ["obtener-certificado", "ver-progreso"]
        assert await index.list_by_category("estudiante", UserRole.INSTRUCTOR, "es") == []


class BrokenRanker:
    def score(self, query_tokens, article):
        raise RuntimeError("model offline")


class TestFailures:
    @pytest.mark.asyncio
    async def test_ranker_failure(self, seeded_store):
        index = KnowledgeBaseIndex(seeded_store, ranker=BrokenRanker())
        with pytest.raises(KnowledgeUnavailable):
            await index.search("certificado", UserRole.STUDENT, "es")

    @pytest.mark.asyncio
    async def test_ranker_failure_on_intent_match(self, seeded_store):
        index = KnowledgeBaseIndex(seeded_store, ranker=BrokenRanker())
        with pytest.raises(KnowledgeUnavailable):
            await index.lookup_by_intent("get_certificate", UserRole.STUDENT, "es", query="mi certificado")

    @pytest.mark.asyncio
    async def test_intent_match_without_query_skips_ranker(self, seeded_store):
        index = KnowledgeBaseIndex(seeded_store, ranker=BrokenRanker())
        results = await index.lookup_by_intent("get_certificate", UserRole.STUDENT, "es")
        assert [r.article.slug for r in results] == ["obtener-certificado"]

    @pytest.mark.asyncio
    async def test_store_failure(self, store, monkeypatch):
        async def boom(published_only=True):
            raise ConnectionError("db down")

        monkeypatch.setattr(store, "list_articles", boom)
        with pytest.raises(KnowledgeUnavailable):
            await KnowledgeBaseIndex(store).search("certificado", UserRole.STUDENT, "es")


class TestAuthoring:
    @pytest.mark.asyncio
    async def test_create_published_article_is_searchable(self, store):
        index = KnowledgeBaseIndex(store)
        created = await index.create_article(_article(
            "cambiar-idioma", title="Cambiar idioma", keywords=["idioma"], target_roles=[UserRole.STUDENT],
        ))
        assert (await store.get_article(created.id)).slug == "cambiar-idioma"
        results = await index.search("idioma", UserRole.STUDENT, "es")
        assert [r.article.slug for r in results] == ["cambiar-idioma"]

    @pytest.mark.asyncio
    async def test_counters_start_at_zero(self, store):
        index = KnowledgeBaseIndex(store)
        created = await index.create_article(_article("x", view_count=40, helpful_count=3, not_helpful_count=1))
        stored = await store.get_article(created.id)
        assert (stored.view_count, stored.helpful_count, stored.not_helpful_count) == (0, 0, 0)

    @pytest.mark.asyncio
    async def test_duplicate_slug_rejected(self, store):
        index = KnowledgeBaseIndex(store)
        await index.create_article(_article("x"))
        with pytest.raises(ValidationFailed):
            await index.create_article(_article("x", title="Otro"))
        assert len(await store.list_articles(published_only=False)) == 1

    @pytest.mark.asyncio
    async def test_blank_content_rejected(self, store):
        with pytest.raises(ValidationFailed):
            await KnowledgeBaseIndex(store).create_article(_article("x", content="   "))
