"""
Conversation Analyzer - follow-up detection and prompt building

Stateless helpers. A message that leans on a pronoun ("what causes it?")
is treated as a follow-up when the recent history holds a self-contained
user question to attach it to. The system prompt then names that topic
explicitly so the model does not lose the thread.
"""

import re
from typing import List, Optional, Sequence

from src.models.conversation import ConversationContext, Message

PRONOUNS = ("it", "this", "that", "these", "those", "they", "them")
TOPIC_LOOKBACK = 5

_PRONOUN_PATTERN = re.compile(r"\b(?:" + "|".join(PRONOUNS) + r")\b", re.IGNORECASE)

EMERGENCY_PHRASES = (
    "chest pain",
    "heart attack",
    "stroke",
    "can't breathe",
    "cannot breathe",
    "difficulty breathing",
    "unconscious",
    "seizure",
    "severe bleeding",
    "overdose",
    "suicidal",
    "suicide",
)

_EMERGENCY_PATTERN = re.compile(
    r"\b(?:" + "|".join(re.escape(phrase) for phrase in EMERGENCY_PHRASES) + r")\b",
    re.IGNORECASE,
)

BASE_PROMPT = """You are Med AI, an AI medical assistant designed to help users with general medical queries and concerns.

Instructions:
1. ALWAYS maintain conversation context
2. EXPLICITLY reference the topic being discussed
3. If using pronouns, clearly state what they refer to
4. Never provide definitive diagnoses
5. Always recommend consulting healthcare professionals
6. Do not write code, and do not answer questions unrelated to medicine
"""

TOPIC_PROMPT = """
Current Topic: "{topic}"
Previous Discussion: This conversation is about {topic}.
Current Query: This appears to be a follow-up question about {topic}.

When responding:
- Explicitly mention that you are talking about {topic}
- Connect your response to the previous discussion about {topic}
- Make sure to maintain continuity with the earlier conversation
"""

EMERGENCY_PROMPT = """
The user's message may describe a medical emergency. Start your reply by
telling them to contact emergency services or seek urgent medical care.
"""

IMAGE_PROMPT = """
For image analysis:
1. Provide a clear description of what you observe
2. Note any notable features or patterns and relevant medical context
3. Never make definitive diagnoses from images
4. Emphasize the importance of professional medical evaluation
"""


def has_pronouns(text: str) -> bool:
    return _PRONOUN_PATTERN.search(text) is not None


def find_main_topic(messages: Sequence[Message]) -> Optional[str]:
    """Newest self-contained user message among the last few"""
    for message in reversed(list(messages)[-TOPIC_LOOKBACK:]):
        if message.role == "user" and not has_pronouns(message.content):
            return message.content
    return None


def is_follow_up(message: str, history: Sequence[Message]) -> bool:
    if not has_pronouns(message):
        return False
    return find_main_topic(history) is not None


def should_update_context(message: str, context: Optional[ConversationContext]) -> bool:
    return not has_pronouns(message) or context is None


def detect_emergency(text: str) -> bool:
    return _EMERGENCY_PATTERN.search(text) is not None


def build_system_prompt(
    message: str,
    context: Optional[ConversationContext],
    *,
    emergency: bool = False,
    image_analysis: bool = False,
) -> str:
    sections: List[str] = [BASE_PROMPT]

    if context is not None and context.current_topic:
        sections.append(TOPIC_PROMPT.format(topic=context.current_topic))
    if emergency:
        sections.append(EMERGENCY_PROMPT)
    if image_analysis:
        sections.append(IMAGE_PROMPT)

    return "".join(sections)
