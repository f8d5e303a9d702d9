"""
Intent classifiers: turn a user message into (intent, confidence).

KeywordIntentClassifier is the default: a phrase table of accent-folded
word stems per intent. LLMIntentClassifier asks Claude or OpenAI for a
JSON verdict. Both return Classification(intent=None) when they have no
opinion; LLM transport failures raise ClassificationUnavailable and the
conversation engine degrades to "no intent".
"""
from __future__ import annotations

import json
import structlog
from typing import Any, Optional, Protocol

from config.settings import LLMConfig, get_settings
from knowledge.ranking import tokenize
from models.errors import ClassificationUnavailable
from models.schemas import REQUEST_HUMAN_INTENT, Classification

logger = structlog.get_logger()


class IntentClassifier(Protocol):
    async def classify(self, text: str, context: dict[str, Any]) -> Classification:
        ...


# ──────────────────────────────────────────────────────────────
#  Keyword classifier
# ──────────────────────────────────────────────────────────────

# Each phrase is a sequence of word stems; a phrase matches when every
# stem prefixes some token of the message.
DEFAULT_PHRASES: dict[str, list[str]] = {
    REQUEST_HUMAN_INTENT: [
        "humano", "persona real", "hablar persona", "agente", "asesor", "operador",
        "representante", "human", "real person", "talk agent",
    ],
    "register": ["registr", "crear cuenta", "nueva cuenta", "sign up", "signup", "inscrib"],
    "check_progress": ["progreso", "avance", "porcentaje", "progress"],
    "get_certificate": ["certificad", "diploma", "certificate"],
    "create_course": ["crear curso", "creo curso", "nuevo curso", "publicar curso", "create course"],
    "technical_issue": ["error", "falla", "no funciona", "problema video", "problema tecnico", "bug"],
    "payment_help": ["pago", "cobro", "factura", "reembolso", "tarjeta", "payment", "refund"],
    "pricing": ["precio", "cuesta", "cuestan", "costo", "price"],
    "browse_courses": ["cursos disponibles", "catalogo", "ver cursos", "browse courses"],
    "contact_instructor": ["contact instructor", "contacto instructor", "escribir instructor"],
    "view_earnings": ["ganancia", "ingreso", "earning"],
    "view_analytics": ["estadistic", "analytics", "metrica"],
    "system_health": ["estado sistema", "system health"],
    "view_reports": ["reporte", "report"],
    "manage_users": ["gestionar usuario", "administrar usuario", "manage user"],
}


class KeywordIntentClassifier:
    """
    Usage:
        classifier = KeywordIntentClassifier()
        result = await classifier.classify("¿Cómo obtengo mi certificado?", {})
        # Classification(intent="get_certificate", confidence=0.75)
    """

    def __init__(self, phrases: Optional[dict[str, list[str]]] = None):
        self._phrases = {
            intent: [tokenize(p) for p in plist]
            for intent, plist in (phrases or DEFAULT_PHRASES).items()
        }

    @property
    def intents(self) -> list[str]:
        return list(self._phrases)

    async def classify(self, text: str, context: dict[str, Any]) -> Classification:
        stripped = (text or "").strip()
        # Quick-reply payloads arrive as the bare intent name
        if stripped in self._phrases:
            return Classification(intent=stripped, confidence=1.0)

        tokens = tokenize(stripped)
        if not tokens:
            return Classification()

        scores = {
            intent: sum(1 for stems in phrase_list if self._matches(stems, tokens))
            for intent, phrase_list in self._phrases.items()
        }
        ranked = sorted(((s, i) for i, s in scores.items() if s > 0), reverse=True)
        if not ranked:
            return Classification()

        best_score, best_intent = ranked[0]
        confidence = min(0.55 + 0.2 * best_score, 0.95)
        if len(ranked) > 1 and ranked[1][0] == best_score:
            # Tied intents: request_human wins, otherwise confidence drops below any sane threshold
            tied = {i for s, i in ranked if s == best_score}
            if REQUEST_HUMAN_INTENT in tied:
                best_intent = REQUEST_HUMAN_INTENT
            else:
                confidence = 0.4
        return Classification(intent=best_intent, confidence=round(confidence, 2))

    @staticmethod
    def _matches(stems: list[str], tokens: list[str]) -> bool:
        return bool(stems) and all(any(t.startswith(stem) for t in tokens) for stem in stems)


# ──────────────────────────────────────────────────────────────
#  LLM classifier
# ──────────────────────────────────────────────────────────────

class LLMIntentClassifier:
    """Claude or OpenAI classifier constrained to a fixed intent vocabulary."""

    def __init__(self, config: Optional[LLMConfig] = None, intents: Optional[list[str]] = None):
        self.config = config or get_settings().llm
        self.intents = intents or list(DEFAULT_PHRASES)
        self._client = None

    @property
    def is_openai(self) -> bool:
        return self.config.provider == "openai"

    async def _get_client(self):
        if self._client is None:
            try:
                if self.is_openai:
                    from openai import AsyncOpenAI
                    self._client = AsyncOpenAI(api_key=self.config.api_key)
                else:
                    import anthropic
                    self._client = anthropic.AsyncAnthropic(api_key=self.config.api_key)
                logger.info("llm_client_initialized", provider=self.config.provider, model=self.config.model)
            except Exception as e:
                logger.error("llm_client_init_failed", provider=self.config.provider, error=str(e))
                raise ClassificationUnavailable(f"LLM client unavailable: {e}") from e
        return self._client

    async def _call_llm(self, system: str, user: str) -> str:
        client = await self._get_client()
        if self.is_openai:
            response = await client.chat.completions.create(
                model=self.config.model,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                messages=[{"role": "system", "content": system}, {"role": "user", "content": user}],
            )
            return response.choices[0].message.content
        response = await client.messages.create(
            model=self.config.model,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
            system=system,
            messages=[{"role": "user", "content": user}],
        )
        return response.content[0].text

    def _system_prompt(self) -> str:
        return (
            "You classify messages sent to the help assistant of a learning platform "
            "(ACC LMS). Users write mostly in Spanish.\n"
            f"Allowed intents: {', '.join(self.intents)}.\n"
            f"Use {REQUEST_HUMAN_INTENT} when the user asks for a person.\n"
            'Return ONLY JSON: {"intent": <allowed intent or null>, "confidence": <0..1>}'
        )

    async def classify(self, text: str, context: dict[str, Any]) -> Classification:
        user = f"Role: {context.get('role', 'anonymous')}\nPage: {context.get('page', '')}\nMessage: {text}"
        try:
            raw = await self._call_llm(self._system_prompt(), user)
        except ClassificationUnavailable:
            raise
        except Exception as e:
            logger.error("intent_detection_failed", error=str(e))
            raise ClassificationUnavailable(str(e)) from e
        return self._parse(raw)

    def _parse(self, raw: str) -> Classification:
        result = (raw or "").strip()
        if result.startswith("```"):
            result = result.split("```")[1].strip()
            if result.startswith("json"):
                result = result[4:].strip()
        try:
            data = json.loads(result)
        except json.JSONDecodeError:
            logger.warning("intent_response_unparseable", raw=result[:200])
            return Classification()
        intent = data.get("intent")
        if intent not in self.intents:
            return Classification()
        try:
            confidence = max(0.0, min(float(data.get("confidence", 0.0)), 1.0))
        except (TypeError, ValueError):
            confidence = 0.0
        return Classification(intent=intent, confidence=confidence)


def create_classifier(kind: Optional[str] = None) -> IntentClassifier:
    settings = get_settings()
    kind = kind or settings.assistant.classifier
    if kind == "llm":
        return LLMIntentClassifier(settings.llm)
    return KeywordIntentClassifier()
