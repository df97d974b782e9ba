"""
Transcript intent classification.

Each contact turn is matched against a table of intent categories. The
highest-priority match becomes the turn's primary intent; across turns the
latched primary only moves to a strictly higher priority, except that a
negative intent always displaces a non-negative one. Once a negative intent
has been latched the lead never becomes bridge-ready again.

Priorities are a policy table: the defaults below can be overridden with
`INTENT_PRIORITIES="no_interest=6,confused=0"`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Pattern, Sequence, Tuple

import structlog

from src.leadbridge.config import Config, ConfigError
from src.leadbridge.records import DerivedIntent

logger = structlog.get_logger(__name__)


class Polarity(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


@dataclass(frozen=True)
class IntentCategory:
    name: str
    polarity: Polarity
    priority: int
    patterns: Tuple[Pattern[str], ...]
    instruction: str


def _compile(*patterns: str) -> Tuple[Pattern[str], ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


# Table order is the final tie-breaker.
DEFAULT_CATEGORIES: Tuple[IntentCategory, ...] = (
    IntentCategory(
        name="cant_talk_now",
        polarity=Polarity.NEUTRAL,
        priority=2,
        patterns=_compile(
            r"busy right now",
            r"can'?t talk( right)? now",
            r"driving( right)? now",
            r"in a meeting",
            r"at work",
            r"not a good time",
            r"middle of something",
        ),
        instruction=(
            "User cannot talk now. Apologize for the inconvenience, ask when would be a better "
            "time to call back, and prepare to end the call."
        ),
    ),
    IntentCategory(
        name="no_interest",
        polarity=Polarity.NEGATIVE,
        priority=4,
        patterns=_compile(
            r"not interested",
            r"don'?t (want|need)",
            r"no thank(s| you)",
            r"stop calling",
            r"leave me alone",
            r"do not call",
            r"take me off",
            r"remove (me|my number)",
            r"remove from (call|contact) list",
        ),
        instruction=(
            "User has expressed no interest. Acknowledge their preference politely, thank them "
            "for their time, and end the call."
        ),
    ),
    IntentCategory(
        name="service_interest",
        polarity=Polarity.POSITIVE,
        priority=4,
        patterns=_compile(
            r"(?<!not )(?<!n't )\binterested\b",
            r"sounds (good|great)",
            r"want to (know|learn) more",
            r"would like to (start|get|talk|speak|know)",
            r"sign( me)? up",
            r"how (do|can|would) I (get|start|sign)",
            r"what (is|are) the (cost|price|fee|rate)s?",
            r"how much (does it|do you|would it) (cost|charge)",
        ),
        instruction=(
            "User is interested in services. Provide relevant information and prepare for "
            "handoff to a human agent."
        ),
    ),
    IntentCategory(
        name="already_have_care",
        polarity=Polarity.NEUTRAL,
        priority=3,
        patterns=_compile(
            r"already have",
            r"already (using|with)",
            r"already (got|getting)",
            r"current(ly)? (have|using|with)",
            r"have (my|our) own",
            r"(we'?re|i'?m) working with",
        ),
        instruction=(
            "User already has care or service. Acknowledge this, briefly mention how your "
            "service might be different or complementary if appropriate, and respect their "
            "current arrangement."
        ),
    ),
    IntentCategory(
        name="wrong_person",
        polarity=Polarity.NEGATIVE,
        priority=5,
        patterns=_compile(
            r"wrong (person|number|name)",
            r"you'?ve got the wrong",
            r"no one (here )?by that name",
            r"nobody (here )?by that name",
            r"(doesn'?t|does not) live here",
            r"never (filled|submitted|asked)",
        ),
        instruction=(
            "Wrong person or number. Apologize for the confusion, confirm if you have the wrong "
            "contact, and prepare to end the call."
        ),
    ),
    IntentCategory(
        name="confused",
        polarity=Polarity.NEUTRAL,
        priority=1,
        patterns=_compile(
            r"confused",
            r"don'?t understand",
            r"what (is this|are you) (about|regarding)",
            r"what (is this|are you) (calling|referring) (to|about)",
            r"why (are you|did you) call",
            r"what'?s (this|that) (about|for)",
            r"what (company|organization|service)",
            r"who (is this|are you)",
            r"where are you (calling )?from",
        ),
        instruction=(
            "User is confused about the call. Clearly reintroduce yourself, explain the purpose "
            "of the call, and ask if they would like more information."
        ),
    ),
    IntentCategory(
        name="needs_more_info",
        polarity=Polarity.POSITIVE,
        priority=1,
        patterns=_compile(
            r"tell me more",
            r"(would|could|can) you (please )?(explain|tell me)",
            r"more (information|details|specifics)",
            r"send me (some )?(information|details)",
            r"how (does it|do you|does that) work",
            r"what (exactly|specifically) do you",
            r"what (kind|type)s? of (care|services?)",
        ),
        instruction=(
            "User needs more information. Provide details about your services, costs, benefits, "
            "and process clearly and concisely."
        ),
    ),
    IntentCategory(
        name="schedule_callback",
        polarity=Polarity.POSITIVE,
        priority=2,
        patterns=_compile(
            r"call (me )?back",
            r"call (me )?(on|at|tomorrow|later)",
            r"(could|can) you call( me)?",
            r"call another time",
            r"reschedule",
            r"schedule (a )?call",
            r"contact me",
            r"reach me",
            r"(later|another) (time|day)",
        ),
        instruction=(
            "User wants to schedule a callback. Ask about and confirm a specific date and time "
            "that works for them, and assure them you will call back at that time."
        ),
    ),
    IntentCategory(
        name="needs_immediate_care",
        polarity=Polarity.POSITIVE,
        priority=5,
        patterns=_compile(
            r"need (help|care|assistance|service|someone) (now|right now|immediately|asap|today)",
            r"need (it|someone|this) (now|today|asap)",
            r"urgent",
            r"emergency",
            r"as soon as (possible|you can)",
            r"can'?t wait",
            r"(how|when) (fast|quickly|soon) can",
        ),
        instruction=(
            "User needs immediate care. Gather necessary details about their situation, express "
            "understanding of urgency, and inform them about the quickest next steps."
        ),
    ),
)


def parse_priority_overrides(raw: str) -> Dict[str, int]:
    """
    Parse `name=priority` pairs separated by commas.

    Raises ConfigError on a malformed pair.
    """
    overrides: Dict[str, int] = {}
    for chunk in (raw or "").split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        name, sep, value = chunk.partition("=")
        if not sep:
            raise ConfigError(f"Invalid INTENT_PRIORITIES entry '{chunk}'. Expected name=priority.")
        try:
            overrides[name.strip()] = int(value.strip())
        except ValueError:
            raise ConfigError(
                f"Invalid INTENT_PRIORITIES priority '{value.strip()}' for '{name.strip()}'."
            )
    return overrides


class IntentPolicy:
    """Category table with priorities applied."""

    def __init__(
        self,
        categories: Sequence[IntentCategory] = DEFAULT_CATEGORIES,
        overrides: Optional[Mapping[str, int]] = None,
    ):
        overrides = dict(overrides or {})
        known = {c.name for c in categories}
        for name in overrides:
            if name not in known:
                logger.warning("Unknown intent in priority overrides", intent=name)

        self.categories: Tuple[IntentCategory, ...] = tuple(
            replace(c, priority=overrides[c.name]) if c.name in overrides else c
            for c in categories
        )
        self._by_name: Dict[str, IntentCategory] = {c.name: c for c in self.categories}
        self._order: Dict[str, int] = {c.name: i for i, c in enumerate(self.categories)}

    @classmethod
    def from_config(cls, config: Config) -> "IntentPolicy":
        return cls(overrides=parse_priority_overrides(config.intent_priorities))

    def get(self, name: str) -> Optional[IntentCategory]:
        return self._by_name.get(name)

    def priority(self, name: str) -> int:
        category = self._by_name.get(name)
        return category.priority if category else 0

    def polarity(self, name: Optional[str]) -> Polarity:
        category = self._by_name.get(name or "")
        return category.polarity if category else Polarity.NEUTRAL

    def is_positive(self, name: Optional[str]) -> bool:
        return self.polarity(name) == Polarity.POSITIVE

    def is_negative(self, name: Optional[str]) -> bool:
        return self.polarity(name) == Polarity.NEGATIVE

    def order(self, name: str) -> int:
        return self._order.get(name, len(self._order))


@dataclass(frozen=True)
class IntentMatch:
    name: str
    polarity: Polarity
    priority: int
    match_count: int
    confidence: float


@dataclass(frozen=True)
class TurnClassification:
    matches: Tuple[IntentMatch, ...] = ()
    primary: Optional[IntentMatch] = None

    @property
    def names(self) -> List[str]:
        return [m.name for m in self.matches]


class IntentClassifier:
    def __init__(self, policy: Optional[IntentPolicy] = None):
        self.policy = policy or IntentPolicy()

    def classify(self, text: str) -> TurnClassification:
        if not text or not text.strip():
            return TurnClassification()

        normalized = text.replace("’", "'")
        matches: List[IntentMatch] = []
        for category in self.policy.categories:
            count = sum(1 for pattern in category.patterns if pattern.search(normalized))
            if not count:
                continue
            denominator = min(3, len(category.patterns)) or 1
            matches.append(
                IntentMatch(
                    name=category.name,
                    polarity=category.polarity,
                    priority=category.priority,
                    match_count=count,
                    confidence=min(1.0, count / denominator),
                )
            )

        if not matches:
            return TurnClassification()

        # Priority, then match count, then table order.
        primary = max(
            matches,
            key=lambda m: (m.priority, m.match_count, -self.policy.order(m.name)),
        )
        return TurnClassification(matches=tuple(matches), primary=primary)


@dataclass(frozen=True)
class IntentUpdate:
    intent: Optional[DerivedIntent]
    changed: bool = False
    instruction: Optional[str] = None


def _merge_supporting(existing: Iterable[str], new: Iterable[str], primary: str) -> Tuple[str, ...]:
    merged: List[str] = []
    for name in list(existing) + list(new):
        if name != primary and name not in merged:
            merged.append(name)
    return tuple(merged)


def latch_intent(
    current: Optional[DerivedIntent],
    classification: TurnClassification,
    policy: IntentPolicy,
) -> IntentUpdate:
    """
    Fold one turn's classification into the latched intent.

    Returns the new latched value and, when the primary changed, the
    instruction to inject into the agent conversation.
    """
    candidate = classification.primary
    if candidate is None:
        return IntentUpdate(intent=current)

    if current is None:
        replace_primary = True
    else:
        current_negative = policy.is_negative(current.primary)
        if candidate.name == current.primary:
            replace_primary = False
        elif candidate.polarity == Polarity.NEGATIVE and not current_negative:
            replace_primary = True
        else:
            replace_primary = candidate.priority > policy.priority(current.primary)

    primary = candidate.name if replace_primary else current.primary
    previous_supporting = current.supporting if current else ()
    if current is not None and replace_primary:
        previous_supporting = (current.primary,) + tuple(previous_supporting)

    negative_latched = bool(current and current.negative_latched) or policy.is_negative(primary)
    intent = DerivedIntent(
        primary=primary,
        supporting=_merge_supporting(previous_supporting, classification.names, primary),
        negative_latched=negative_latched,
    )

    if not replace_primary:
        return IntentUpdate(intent=intent)

    category = policy.get(primary)
    logger.info(
        "Primary intent latched",
        intent=primary,
        previous=current.primary if current else None,
        priority=candidate.priority,
        confidence=round(candidate.confidence, 2),
        negative_latched=negative_latched,
    )
    return IntentUpdate(
        intent=intent,
        changed=True,
        instruction=category.instruction if category else None,
    )
