"""Tone selection and tone analysis for notification text.

``ToneAnalyzer.select`` is a pure mapping from (preferred tone, type,
priority) to the tone a notification is rendered in, plus the phrasing
constraints that tone imposes. ``analyze`` and ``improve_content`` score
and repair already rendered text.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from functools import lru_cache
from typing import Dict, FrozenSet, List, Tuple

from gentlenudge.notifications.models import (
    MessageTone,
    NotificationContent,
    NotificationPriority,
    NotificationType,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Vocabulary
# =============================================================================

POSITIVE_WORDS = (
    "amazing", "excellent", "fantastic", "wonderful", "great", "awesome",
    "outstanding", "brilliant", "impressive", "remarkable", "nice", "solid",
)
NEGATIVE_WORDS = (
    "terrible", "awful", "horrible", "bad", "worst", "fail", "failed",
    "disaster", "nightmare", "pathetic", "useless",
)
ENCOURAGING_PHRASES = (
    "you've got this", "you can do it", "keep going", "you're doing great",
    "almost there", "way to go", "nice work", "keep it up", "well done",
    "no rush", "take your time", "no worries", "appreciate your work",
)
DISCOURAGING_PHRASES = (
    "you should have", "you failed to", "you didn't", "you forgot",
    "you need to fix", "this is wrong", "you messed up", "you're behind",
)
URGENCY_WORDS = ("urgent", "critical", "immediately", "asap")
PRESSURE_WORDS = ("must", "have to", "required", "mandatory", "overdue")
PROFESSIONAL_WORDS = (
    "commendable", "exemplary", "effective", "successful", "accomplished",
    "please", "recommend", "review", "status",
)
CASUAL_WORDS = ("hey", "cool", "sweet", "no worries", "just", "quick")

BANNED_PHRASES = (
    "you failed",
    "you're wrong",
    "you should have",
    "you didn't",
    "you forgot",
    "you need to fix",
    "this is bad",
    "terrible job",
    "you messed up",
    "you're behind",
    "you're late",
    "overdue again",
    "not good enough",
    "disappointing",
    "unacceptable",
)

REPLACEMENTS: Dict[str, str] = {
    "you should have": "next time it may help to",
    "you didn't": "it looks like you haven't yet",
    "you forgot": "remember to",
    "urgent": "timely",
    "critical": "important",
    "immediately": "soon",
    "asap": "when you can",
    "overdue": "past its due date",
    "failed": "needs another look",
    "terrible": "challenging",
    "awful": "tricky",
    "must": "could",
    "have to": "might want to",
    "required": "recommended",
}

_EMOJI = re.compile(
    "[\U0001F300-\U0001FAFF\U00002600-\U000027BF\U00002B50\U0000FE0F]"
)

# Fallback order when a template is missing for a tone
TONE_FALLBACKS: Dict[MessageTone, Tuple[MessageTone, ...]] = {
    MessageTone.ENCOURAGING: (MessageTone.CASUAL,),
    MessageTone.CASUAL: (MessageTone.ENCOURAGING,),
    MessageTone.PROFESSIONAL: (MessageTone.ENCOURAGING,),
}


@dataclass(frozen=True)
class ToneConstraints:
    """Phrasing rules applied to rendered text.

    Attributes:
        forbidden_words: Words and phrases rewritten via ``REPLACEMENTS``
        allow_emoji: Whether emoji may appear
        max_exclamations: Exclamation marks allowed per text
        prefer_brevity: Drop optional encouragement and greeting phrases
    """

    forbidden_words: FrozenSet[str] = frozenset()
    allow_emoji: bool = True
    max_exclamations: int = 1
    prefer_brevity: bool = False


@dataclass(frozen=True)
class ToneSelection:
    tone: MessageTone
    constraints: ToneConstraints


_ALARMIST = frozenset(
    {"urgent", "critical", "overdue", "asap", "immediately", "failed", "terrible", "awful"}
)
_PRESSURE = frozenset({"must", "have to", "required"})
_BLAME = frozenset({"you should have", "you didn't", "you forgot"})

TONE_CONSTRAINTS: Dict[MessageTone, ToneConstraints] = {
    MessageTone.ENCOURAGING: ToneConstraints(
        forbidden_words=_ALARMIST | _PRESSURE | _BLAME,
        allow_emoji=True,
        max_exclamations=1,
    ),
    MessageTone.CASUAL: ToneConstraints(
        forbidden_words=(_ALARMIST - {"overdue"}) | _PRESSURE | _BLAME,
        allow_emoji=True,
        max_exclamations=1,
    ),
    MessageTone.PROFESSIONAL: ToneConstraints(
        forbidden_words=frozenset({"failed", "terrible", "awful"}) | _BLAME,
        allow_emoji=False,
        max_exclamations=0,
        prefer_brevity=True,
    ),
}


@dataclass
class ToneAnalysis:
    """Result of analysing rendered content.

    Attributes:
        score: Overall tone score in [0, 1], higher is more positive
        tone: Tone the text reads as
        encouragement_level: Encouragement in [0, 1]
        sentiment: positive, neutral or negative
        flagged_phrases: Banned phrases found in the text
        suggestions: Human readable improvement hints
        metrics: Raw vocabulary counts
    """

    score: float
    tone: MessageTone
    encouragement_level: float
    sentiment: str
    flagged_phrases: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    metrics: Dict[str, float] = field(default_factory=dict)


@lru_cache(maxsize=None)
def _phrase_pattern(phrase: str) -> re.Pattern:
    return re.compile(rf"(?<![\w']){re.escape(phrase)}(?![\w'])", re.IGNORECASE)


def _count(text: str, phrases: Tuple[str, ...]) -> int:
    return sum(len(_phrase_pattern(p).findall(text)) for p in phrases)


def _match_case(original: str, replacement: str) -> str:
    if original[:1].isupper():
        return replacement[:1].upper() + replacement[1:]
    return replacement


def _replace_phrase(text: str, phrase: str, replacement: str) -> str:
    return _phrase_pattern(phrase).sub(lambda m: _match_case(m.group(0), replacement), text)


def _limit_exclamations(text: str, limit: int) -> str:
    seen = 0

    def _sub(_match: re.Match) -> str:
        nonlocal seen
        seen += 1
        return "!" if seen <= limit else "."

    return re.sub(r"!+", _sub, text)


def _readability(text: str) -> float:
    words = len(text.split())
    sentences = max(1, len([s for s in re.split(r"[.!?]+", text) if s.strip()]))
    avg = words / sentences
    return max(0.0, min(1.0, 1 - (avg - 15) / 20))


class ToneAnalyzer:
    """Chooses tones and keeps rendered text supportive.

    Usage:
        analyzer = ToneAnalyzer()
        selection = analyzer.select(MessageTone.CASUAL, NotificationType.DEADLINE_WARNING,
                                    NotificationPriority.HIGH)
        text = analyzer.apply_constraints("Heads up!!", selection.constraints)
    """

    def select(
        self,
        preferred: MessageTone,
        notification_type: NotificationType,
        priority: NotificationPriority,
    ) -> ToneSelection:
        """Select the rendering tone and its constraints.

        Args:
            preferred: The user's preferred tone
            notification_type: Kind of notification
            priority: Notification priority

        Returns:
            Selected tone with phrasing constraints
        """
        tone = preferred
        if (
            preferred is MessageTone.CASUAL
            and priority is NotificationPriority.HIGH
            and notification_type is not NotificationType.ACHIEVEMENT_RECOGNITION
        ):
            # High-stakes reminders read as flippant in a casual voice
            tone = MessageTone.ENCOURAGING
        return ToneSelection(tone=tone, constraints=TONE_CONSTRAINTS[tone])

    def constraints_for(self, tone: MessageTone) -> ToneConstraints:
        return TONE_CONSTRAINTS[tone]

    def fallbacks(self, tone: MessageTone) -> Tuple[MessageTone, ...]:
        return TONE_FALLBACKS[tone]

    def apply_constraints(self, text: str, constraints: ToneConstraints) -> str:
        """Rewrite ``text`` so it satisfies ``constraints``."""
        # Longest phrases first so "you should have" wins over "have to"
        for phrase in sorted(constraints.forbidden_words, key=len, reverse=True):
            replacement = REPLACEMENTS.get(phrase)
            if replacement is not None:
                text = _replace_phrase(text, phrase, replacement)
        if not constraints.allow_emoji:
            text = _EMOJI.sub("", text)
        text = _limit_exclamations(text, constraints.max_exclamations)
        return re.sub(r"[ \t]{2,}", " ", text).strip()

    def apply_to_content(
        self, content: NotificationContent, constraints: ToneConstraints
    ) -> NotificationContent:
        return replace(
            content,
            title=self.apply_constraints(content.title, constraints),
            message=self.apply_constraints(content.message, constraints),
        )

    def analyze(self, content: NotificationContent) -> ToneAnalysis:
        """Score rendered content for positivity and pressure."""
        text = f"{content.title} {content.message}".lower()

        metrics: Dict[str, float] = {
            "word_count": len(text.split()),
            "positive": _count(text, POSITIVE_WORDS),
            "negative": _count(text, NEGATIVE_WORDS),
            "encouraging": _count(text, ENCOURAGING_PHRASES),
            "discouraging": _count(text, DISCOURAGING_PHRASES),
            "urgency": _count(text, URGENCY_WORDS),
            "pressure": _count(text, PRESSURE_WORDS),
            "exclamations": content.message.count("!"),
            "readability": _readability(text),
        }

        balance = (
            metrics["positive"] + metrics["encouraging"]
            - metrics["negative"] - metrics["discouraging"]
        )
        if balance > 1:
            sentiment = "positive"
        elif balance < -1:
            sentiment = "negative"
        else:
            sentiment = "neutral"

        encouragement = (
            metrics["encouraging"] * 0.3
            + metrics["positive"] * 0.2
            - metrics["discouraging"] * 0.4
            - metrics["pressure"] * 0.2
        )
        encouragement_level = max(0.0, min(1.0, (encouragement + 2) / 4))

        score = 0.5
        if sentiment == "positive":
            score += 0.3
        elif sentiment == "negative":
            score -= 0.4
        score += encouragement_level * 0.3
        score -= (metrics["pressure"] + metrics["urgency"]) * 0.1
        score += metrics["readability"] * 0.2
        score = max(0.0, min(1.0, score))

        flagged = [p for p in BANNED_PHRASES if _phrase_pattern(p).search(text)]

        suggestions = []
        if metrics["negative"]:
            suggestions.append("Replace negative words with positive or neutral alternatives")
        if metrics["pressure"] > 2:
            suggestions.append("Reduce pressure-inducing language")
        if metrics["urgency"] > 1:
            suggestions.append("Consider reducing urgency language")
        if metrics["exclamations"] > 3:
            suggestions.append("Reduce number of exclamation points")
        if metrics["encouraging"] == 0 and metrics["positive"] < 2:
            suggestions.append("Add an encouraging phrase")

        return ToneAnalysis(
            score=score,
            tone=self._identify_tone(text),
            encouragement_level=encouragement_level,
            sentiment=sentiment,
            flagged_phrases=flagged,
            suggestions=suggestions,
            metrics=metrics,
        )

    def _identify_tone(self, text: str) -> MessageTone:
        professional = _count(text, PROFESSIONAL_WORDS)
        casual = _count(text, CASUAL_WORDS)
        if professional > casual:
            return MessageTone.PROFESSIONAL
        if casual > 0:
            return MessageTone.CASUAL
        return MessageTone.ENCOURAGING

    def validate(self, content: NotificationContent, minimum_score: float = 0.6) -> bool:
        """Whether content is positive enough to send as is."""
        analysis = self.analyze(content)
        return (
            analysis.score >= minimum_score
            and analysis.sentiment != "negative"
            and not analysis.flagged_phrases
        )

    def improve_content(
        self, content: NotificationContent, target_tone: MessageTone = MessageTone.ENCOURAGING
    ) -> NotificationContent:
        """Rewrite banned and pressuring language and retag the tone."""
        constraints = TONE_CONSTRAINTS[target_tone]
        everything = ToneConstraints(
            forbidden_words=frozenset(REPLACEMENTS) | constraints.forbidden_words,
            allow_emoji=constraints.allow_emoji,
            max_exclamations=constraints.max_exclamations,
            prefer_brevity=constraints.prefer_brevity,
        )
        improved = self.apply_to_content(content, everything)
        if improved != content:
            logger.debug(f"Improved tone of {content.template_id or 'content'}")
        return replace(improved, tone=target_tone)
