"""
Keyword fallback classification.

Used whenever the LLM is unreachable or returns something that is not a
category label. Pure and deterministic: the same subject and body always
produce the same category.

Lists are checked in priority order and the first list with any
case-insensitive substring hit wins. Out of Office comes first because
auto-replies routinely mention meetings and calls. No hit at all means Spam.

Usage:
    from inboxsync.agent.keywords import fallback_category
    category = fallback_category(subject, body)
"""

from inboxsync.agent.schemas import Category


OUT_OF_OFFICE_KEYWORDS = (
    "out of office",
    "away from office",
    "currently unavailable",
    "automatic reply",
    "auto reply",
    "vacation",
    "holiday",
    "will be back",
    "returning on",
    "away until",
)

MEETING_KEYWORDS = (
    "schedule",
    "meeting",
    "call",
    "appointment",
    "interview",
    "book",
    "available",
    "calendar",
    "time slot",
    "zoom",
    "teams meeting",
    "conference call",
)

INTERESTED_KEYWORDS = (
    "interested",
    "looks good",
    "sounds great",
    "tell me more",
    "learn more",
    "discuss",
    "explore",
    "potential",
    "opportunity",
    "impressed",
    "exciting",
    "perfect timing",
    "exactly what",
)

NOT_INTERESTED_KEYWORDS = (
    "not interested",
    "no thanks",
    "not right now",
    "pass",
    "decline",
    "reject",
    "not suitable",
    "not looking",
    "remove me",
    "unsubscribe",
    "stop sending",
)

SPAM_KEYWORDS = (
    "buy now",
    "limited time",
    "free",
    "offer expires",
    "click here",
    "act now",
    "special deal",
    "discount",
    "winner",
    "congratulations",
    "claim your",
    "urgent",
)

# Order matters: first hit wins.
PRIORITY_ORDER: tuple[tuple[Category, tuple[str, ...]], ...] = (
    (Category.OUT_OF_OFFICE, OUT_OF_OFFICE_KEYWORDS),
    (Category.MEETING_BOOKED, MEETING_KEYWORDS),
    (Category.INTERESTED, INTERESTED_KEYWORDS),
    (Category.NOT_INTERESTED, NOT_INTERESTED_KEYWORDS),
    (Category.SPAM, SPAM_KEYWORDS),
)

DEFAULT_CATEGORY = Category.SPAM


def _content(subject: str, body: str) -> str:
    return f"{subject or ''} {body or ''}".lower()


def fallback_category(subject: str, body: str) -> Category:
    """Classify by keyword lists in priority order. Defaults to Spam."""
    content = _content(subject, body)
    for category, keywords in PRIORITY_ORDER:
        if any(keyword in content for keyword in keywords):
            return category
    return DEFAULT_CATEGORY


def keyword_confidence(subject: str, body: str) -> tuple[Category, float]:
    """
    Best category by the fraction of its keyword list that matched.

    Ties go to the earlier category in priority order. With no matches at
    all the result is (Spam, 0.0).
    """
    content = _content(subject, body)
    best = (DEFAULT_CATEGORY, 0.0)
    for category, keywords in PRIORITY_ORDER:
        matches = sum(1 for keyword in keywords if keyword in content)
        confidence = matches / len(keywords)
        if confidence > best[1]:
            best = (category, confidence)
    return best
