"""
All LLM prompt templates for the pipeline.

This is the single file to edit when you need to change how the AI
classifies emails or drafts suggested replies. No other code changes needed.

IMPORTANT:
- Never put actual email content in this file; these are templates.
- The {placeholders} are filled in at runtime by the classifier and
  the retrieval service.
- Keep prompts focused and concise to minimize token usage and cost.
"""

import re
from typing import Optional

from inboxsync.agent.schemas import Category, ExampleDocument

# Characters of body text sent to the model for classification.
BODY_PREFIX_CHARS = 2000
# Characters of each prior thread message included as context.
THREAD_BODY_CHARS = 200
# How many prior thread messages are included.
THREAD_MAX_MESSAGES = 3

# =============================================================================
# CLASSIFICATION
# =============================================================================

CLASSIFY_SYSTEM = """\
You are an AI assistant that categorizes emails based on their content.

You must categorize emails into exactly one of these categories:
- "Interested": Emails showing positive interest, engagement, or potential for business/opportunities
- "Meeting Booked": Emails about scheduling, confirming, or booking meetings/calls/interviews
- "Not Interested": Emails showing disinterest, rejection, or declining offers
- "Spam": Promotional emails, advertisements, automated marketing emails, or irrelevant content
- "Out of Office": Auto-reply messages indicating the person is away or unavailable

Analyze the email content including subject and body, then respond with only \
the category name (exact match required).

Examples:
- "Thanks for reaching out, this looks interesting" → Interested
- "Let's schedule a call for next week" → Meeting Booked
- "Not interested at this time" → Not Interested
- "I'm currently out of office until..." → Out of Office
- "Buy now! Limited time offer!" → Spam"""

SENTIMENT_INSTRUCTIONS = """

Additionally, provide a sentiment score from 1-10 where:
1-3 = Negative sentiment
4-6 = Neutral sentiment
7-10 = Positive sentiment

Respond in this exact format:
Category: [CATEGORY_NAME]
Sentiment: [NUMBER]"""

CLASSIFY_USER = """\
Email to categorize:
From: {sender}
Subject: {subject}
Body: {body}{thread_block}"""

THREAD_BLOCK_HEADER = "\n\nPrevious emails in thread:\n"

THREAD_ENTRY = "{index}. Subject: {subject}\nBody: {body}...\n"

DEFAULT_SENTIMENT = 5

# =============================================================================
# REPLY SUGGESTION (retrieval-grounded)
# =============================================================================

REPLY_SYSTEM = """\
You are an AI assistant that helps generate professional email replies based \
on similar examples.

Your role:
- Generate professional, concise replies for interested emails
- Always include the meeting booking link when appropriate: {meeting_link}
- Match the tone and style of the provided examples
- Keep replies short and actionable

Product/Service Context: {product_description}

Here are some similar examples for reference:
{examples}"""

REPLY_EXAMPLE = 'Example Context: {context}\nOriginal Email: "{email}"\nReply: "{reply}"'

REPLY_USER = """\
Please generate a professional reply for this email:

From: {sender}
Subject: {subject}
Body: {body}

Generate a positive, professional response that includes the meeting \
booking link when appropriate."""


# =============================================================================
# PROMPT BUILDERS
# =============================================================================

def truncate(text: str, limit: int) -> str:
    """Cut text to `limit` characters, marking the cut with '...'."""
    if len(text) > limit:
        return text[:limit] + "..."
    return text


def build_thread_block(previous: list[dict]) -> str:
    """
    Format up to the last three prior thread messages as extra context.

    Each entry is a dict with 'subject' and 'body' keys.
    """
    if not previous:
        return ""
    entries = [
        THREAD_ENTRY.format(
            index=i,
            subject=msg.get("subject", ""),
            body=(msg.get("body") or "")[:THREAD_BODY_CHARS],
        )
        for i, msg in enumerate(previous[-THREAD_MAX_MESSAGES:], start=1)
    ]
    return THREAD_BLOCK_HEADER + "\n".join(entries)


def build_classify_user(
    sender: str,
    subject: str,
    body: str,
    previous: Optional[list[dict]] = None,
) -> str:
    return CLASSIFY_USER.format(
        sender=sender,
        subject=subject,
        body=truncate(body, BODY_PREFIX_CHARS),
        thread_block=build_thread_block(previous or []),
    )


def build_reply_system(
    examples: list[ExampleDocument],
    meeting_link: str,
    product_description: str,
) -> str:
    """Build the grounding system prompt from the retrieved examples."""
    formatted = "\n\n".join(
        REPLY_EXAMPLE.format(context=doc.context, email=doc.email, reply=doc.reply)
        for doc in examples
    )
    return REPLY_SYSTEM.format(
        meeting_link=meeting_link,
        product_description=product_description,
        examples=formatted,
    )


def build_reply_user(sender: str, subject: str, body: str) -> str:
    return REPLY_USER.format(
        sender=sender or "Unknown",
        subject=subject or "No Subject",
        body=body or "No content",
    )


# =============================================================================
# RESPONSE PARSING: how we extract structured data from LLM responses
# =============================================================================

def parse_category(raw_response: str) -> Optional[Category]:
    """
    Match the model's answer against the canonical labels.

    Only an exact, case-sensitive match (after trimming whitespace) is
    accepted. Returns None for anything else.
    """
    return Category.from_label(raw_response.strip())


_CATEGORY_LINE = re.compile(r"Category:\s*(.+)")
_SENTIMENT_LINE = re.compile(r"Sentiment:\s*(-?\d+)")


def parse_sentiment_response(raw_response: str) -> tuple[Optional[Category], int]:
    """
    Parse the two-line "Category: X / Sentiment: N" answer.

    The two lines are parsed independently. A missing or invalid category
    comes back as None; a missing sentiment defaults to 5; any parsed
    sentiment is clamped into [1, 10].
    """
    category = None
    category_match = _CATEGORY_LINE.search(raw_response)
    if category_match:
        category = parse_category(category_match.group(1))

    sentiment = DEFAULT_SENTIMENT
    sentiment_match = _SENTIMENT_LINE.search(raw_response)
    if sentiment_match:
        sentiment = int(sentiment_match.group(1))

    return category, max(1, min(10, sentiment))
