"""Lexical intent classifier.

Each example phrase is a TF-IDF vector; an utterance scores against an intent
as its best cosine similarity over that intent's examples. An exact
normalized match scores 1.0. A match that shares a single token with a
longer example is scaled down by the share of that example it covers.
Catalog info intents (``service.info.<id>``, ``product.info.<id>``) are
additionally matched by whole-phrase keyword lookup, which is exempt from the
confidence threshold. Action trigger words ("book", "quote", "demo") take
precedence over info matches; the info item is kept as the result's subject.

The model is built once and is read-only afterwards, so a single instance can
be shared by concurrent turns.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable

from techrehub.logging_config import get_logger
from techrehub.services.catalog import Catalog
from techrehub.services.errors import ModelNotTrainedError

logger = get_logger("intent_classifier")

FALLBACK_INTENT = "fallback"
NONE_INTENT = "None"
DEFAULT_THRESHOLD = 0.6
DEFAULT_FALLBACK_ANSWER = "I'm not sure I understand. Could you rephrase that?"

_INFO_PREFIXES = ("service.info.", "product.info.")


def is_info_intent(intent: str | None) -> bool:
    return bool(intent) and intent.startswith(_INFO_PREFIXES)


def info_target(intent: str) -> tuple[str, str]:
    """Split ``service.info.<id>`` into ("service", "<id>")."""
    kind, _, item_id = intent.split(".", 2)
    return kind, item_id


def normalize_text(text: str) -> str:
    if not text:
        return ""
    normalized = text.strip().casefold()
    normalized = re.sub(r"[^\w\s]", " ", normalized)
    normalized = re.sub(r"\s+", " ", normalized)
    return normalized.strip()


def tokenize(text: str) -> list[str]:
    return [token for token in normalize_text(text).split() if len(token) > 1]


@dataclass
class IntentCorpus:
    examples: list[tuple[str, str]] = field(default_factory=list)  # (utterance, intent)
    answers: dict[str, list[str]] = field(default_factory=dict)
    info_keywords: dict[str, list[str]] = field(default_factory=dict)
    fallback_answers: list[str] = field(default_factory=list)
    # Checked in order; the first intent with a trigger word in the utterance wins.
    action_triggers: list[tuple[str, tuple[str, ...]]] = field(default_factory=list)

    def add(self, utterance: str, intent: str) -> None:
        if normalize_text(utterance):
            self.examples.append((utterance, intent))

    def add_answer(self, intent: str, answer: str) -> None:
        self.answers.setdefault(intent, []).append(answer)


def build_corpus(catalog: Catalog, intents_data: dict) -> IntentCorpus:
    """Combine the hard-coded phrases with phrases generated from the catalog."""
    corpus = IntentCorpus()
    intents = intents_data.get("intents") or {}
    for intent, definition in intents.items():
        if not isinstance(definition, dict):
            continue
        for example in definition.get("examples") or []:
            corpus.add(str(example), intent)
        for answer in definition.get("answers") or []:
            corpus.add_answer(intent, str(answer))

    corpus.fallback_answers = [str(a) for a in intents_data.get("fallback_answers") or []]

    for trigger in intents_data.get("action_triggers") or []:
        words = tuple(normalize_text(str(word)) for word in trigger.get("words") or [])
        if trigger.get("intent") and words:
            corpus.action_triggers.append((str(trigger["intent"]), words))

    templates = intents_data.get("info_templates") or {}
    for kind in ("service", "product"):
        kind_templates = templates.get(kind) or ["tell me about {keyword}", "what is {keyword}"]
        for item in catalog.active_items(kind):
            intent = f"{kind}.info.{item.id}"
            phrases = [*item.keywords, item.name]
            for phrase in phrases:
                for template in kind_templates:
                    corpus.add(template.format(keyword=phrase), intent)
            corpus.info_keywords[intent] = phrases
            corpus.add_answer(
                intent,
                f"{item.name} - {item.description}\nCategory: {item.category}\nPrice: {item.price}",
            )
    return corpus


@dataclass(frozen=True)
class ClassificationResult:
    intent: str
    score: float
    answer: str | None = None
    keyword_match: bool = False
    subject: str | None = None  # info intent named alongside an action, e.g. "book laptop repair"

    @property
    def is_fallback(self) -> bool:
        return self.intent == FALLBACK_INTENT


@dataclass(frozen=True)
class _Document:
    intent: str
    normalized: str
    weights: dict[str, float]
    norm: float
    total: float


class IntentClassifier:
    def __init__(self, threshold: float = DEFAULT_THRESHOLD):
        self.threshold = threshold
        self._documents: list[_Document] = []
        self._idf: dict[str, float] = {}
        self._unknown_idf = 1.0
        self._exact: dict[str, str] = {}
        self._keywords: list[tuple[str, str]] = []
        self._triggers: list[tuple[str, tuple[str, ...]]] = []
        self._answers: dict[str, list[str]] = {}
        self._fallback_answer = DEFAULT_FALLBACK_ANSWER
        self._trained = False

    @classmethod
    def train(cls, corpus: IntentCorpus, threshold: float = DEFAULT_THRESHOLD) -> "IntentClassifier":
        classifier = cls(threshold=threshold)
        classifier.fit(corpus)
        return classifier

    @property
    def is_trained(self) -> bool:
        return self._trained

    @property
    def intents(self) -> set[str]:
        return {doc.intent for doc in self._documents}

    def fit(self, corpus: IntentCorpus) -> None:
        """Build the model from scratch. Refitting on the same corpus yields the same model."""
        tokenized = [(intent, utterance, tokenize(utterance)) for utterance, intent in corpus.examples]
        tokenized = [(intent, utterance, tokens) for intent, utterance, tokens in tokenized if tokens]
        if not tokenized:
            raise ValueError("Cannot train intent classifier on an empty corpus")

        total = len(tokenized)
        document_frequency: Counter[str] = Counter()
        for _, _, tokens in tokenized:
            document_frequency.update(set(tokens))

        self._idf = {
            token: math.log((total + 1) / (freq + 1)) + 1.0 for token, freq in document_frequency.items()
        }
        self._unknown_idf = math.log(total + 1) + 1.0

        documents = []
        exact: dict[str, str] = {}
        for intent, utterance, tokens in tokenized:
            weights = self._weigh(tokens)
            documents.append(
                _Document(
                    intent=intent,
                    normalized=normalize_text(utterance),
                    weights=weights,
                    norm=_norm(weights.values()),
                    total=sum(weights.values()),
                )
            )
            exact.setdefault(normalize_text(utterance), intent)

        keywords = []
        for intent, phrases in corpus.info_keywords.items():
            for phrase in phrases:
                normalized = normalize_text(phrase)
                if normalized:
                    keywords.append((normalized, intent))
        # Longest phrase wins when several keywords occur in one utterance.
        keywords.sort(key=lambda pair: (-len(pair[0]), pair[1]))

        self._documents = documents
        self._exact = exact
        self._keywords = keywords
        self._triggers = list(corpus.action_triggers)
        self._answers = {intent: list(answers) for intent, answers in corpus.answers.items()}
        self._fallback_answer = (corpus.fallback_answers or [DEFAULT_FALLBACK_ANSWER])[0]
        self._trained = True
        logger.info(
            "Intent model trained",
            extra={"context": {"examples": total, "intents": len(self.intents), "keywords": len(keywords)}},
        )

    def classify(self, text: str) -> ClassificationResult:
        """Map an utterance to an intent, applying the confidence threshold."""
        if not self._trained:
            raise ModelNotTrainedError("Intent classifier used before training")

        normalized = normalize_text(text)
        if not normalized:
            return self._fallback(0.0)

        if normalized in self._exact:
            intent = self._exact[normalized]
            if intent == NONE_INTENT:
                return self._fallback(1.0)
            return self._result(intent, 1.0)

        tokens = tokenize(normalized)
        intent, score = self._best_match(tokens)
        confident = bool(intent) and intent != NONE_INTENT and score >= self.threshold
        keyword_intent = self._keyword_match(normalized)

        action = self._action_match(tokens)
        if action and (not confident or intent == action or is_info_intent(intent)):
            subject = keyword_intent or (intent if confident and is_info_intent(intent) else None)
            return self._result(action, score if intent == action else 0.0, subject=subject)

        if confident:
            return self._result(intent, score)

        if keyword_intent:
            return self._result(keyword_intent, score if intent == keyword_intent else 0.0, True)

        return self._fallback(score)

    def answer_for(self, intent: str) -> str | None:
        answers = self._answers.get(intent)
        return answers[0] if answers else None

    def _weigh(self, tokens: Iterable[str]) -> dict[str, float]:
        counts = Counter(tokens)
        return {token: count * self._idf.get(token, self._unknown_idf) for token, count in counts.items()}

    def _best_match(self, tokens: list[str]) -> tuple[str | None, float]:
        if not tokens:
            return None, 0.0
        query = self._weigh(tokens)
        query_norm = _norm(query.values())
        best_intent = None
        best_score = 0.0
        for doc in self._documents:
            shared = [token for token in query if token in doc.weights]
            if not shared:
                continue
            dot = sum(query[token] * doc.weights[token] for token in shared)
            score = dot / (query_norm * doc.norm)
            if len(shared) == 1 and len(doc.weights) > 1:
                score *= doc.weights[shared[0]] / doc.total
            if score > best_score:
                best_score = score
                best_intent = doc.intent
        return best_intent, min(best_score, 1.0)

    def _keyword_match(self, normalized: str) -> str | None:
        padded = f" {normalized} "
        for keyword, intent in self._keywords:
            if f" {keyword} " in padded:
                return intent
        return None

    def _action_match(self, tokens: list[str]) -> str | None:
        present = set(tokens)
        for intent, words in self._triggers:
            if present.intersection(words):
                return intent
        return None

    def _result(
        self,
        intent: str,
        score: float,
        keyword_match: bool = False,
        subject: str | None = None,
    ) -> ClassificationResult:
        return ClassificationResult(
            intent=intent,
            score=round(score, 4),
            answer=self.answer_for(intent),
            keyword_match=keyword_match,
            subject=subject,
        )

    def _fallback(self, score: float) -> ClassificationResult:
        return ClassificationResult(intent=FALLBACK_INTENT, score=round(score, 4), answer=self._fallback_answer)


def _norm(values: Iterable[float]) -> float:
    return math.sqrt(sum(value * value for value in values)) or 1.0
