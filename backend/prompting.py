"""
Prompt composition.

Builds the ordered prompt parts for a turn (system instruction, personalization,
the user's text, and an optional attachment) plus the bounded history window.

Memory policy is recency-only: the last ``HISTORY_LIMIT`` messages are passed
to the model and anything older is dropped, never summarized.
"""

import base64
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .attachments import AttachmentResolver, ResolvedAttachment

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 10
SYSTEM_SENDERS = ("system",)

INLINE_IMAGE_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "gif": "image/gif",
}


class PersonalityMode(str, Enum):
    DEFAULT = "default"
    PROFESSIONAL = "professional"
    CREATIVE = "creative"
    CODER = "coder"

    @classmethod
    def parse(cls, value: Optional[str]) -> "PersonalityMode":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.DEFAULT


SYSTEM_PROMPTS = {
    PersonalityMode.DEFAULT: (
        "You are Nat, a friendly, helpful, and intelligent AI assistant. "
        "You are witty, approachable, and love to help."
    ),
    PersonalityMode.PROFESSIONAL: (
        "You are Nat, a highly professional and efficient AI consultant. Your responses are concise, "
        "formal, and strictly business-oriented. Focus on accuracy and productivity."
    ),
    PersonalityMode.CREATIVE: (
        "You are Nat, a creative muse. You speak in a colorful, imaginative way. You love brainstorming, "
        "storytelling, and thinking outside the box. Use metaphors and vivid language."
    ),
    PersonalityMode.CODER: (
        "You are Nat, an expert software engineer. You provide clean, optimized code solutions. "
        "You explain technical concepts clearly and focus on best practices."
    ),
}


def text_part(text: str) -> Dict[str, Any]:
    return {"type": "text", "text": text}


def inline_part(data: bytes, mime_type: str) -> Dict[str, Any]:
    return {
        "type": "inline_data",
        "mime_type": mime_type,
        "data": base64.b64encode(data).decode("ascii"),
    }


def system_instruction(mode: Optional[str]) -> str:
    return SYSTEM_PROMPTS[PersonalityMode.parse(mode)]


def personalization(profile: Optional[Dict[str, Any]]) -> str:
    profile = profile or {}
    name = profile.get("name") or "User"
    theme = (profile.get("preferences") or {}).get("theme") or "default"
    return f"\nYou are speaking to {name}. Context: The user prefers {theme} theme."


def history_window(
    messages: List[Dict[str, Any]],
    current_id: Optional[str] = None,
    limit: int = HISTORY_LIMIT,
) -> List[Dict[str, str]]:
    """Map the most recent ``limit`` messages to provider chat roles.

    The message identified by ``current_id`` is counted toward the window but
    left out of the result, since it is sent as the prompt itself.
    """
    window = messages[-limit:] if limit > 0 else []
    history = []
    for msg in window:
        if current_id and msg.get("id") == current_id:
            continue
        sender = msg.get("sender")
        if sender in SYSTEM_SENDERS:
            continue
        content = msg.get("content") or ""
        if not content:
            continue
        history.append({"role": "user" if sender == "user" else "assistant", "content": content})
    return history


def attachment_part(attachment: ResolvedAttachment) -> Optional[Dict[str, Any]]:
    if attachment.category == "image" and attachment.extension in INLINE_IMAGE_TYPES:
        mime = INLINE_IMAGE_TYPES.get(attachment.extension, "image/png")
        try:
            return inline_part(attachment.read_bytes(), mime)
        except OSError:
            logger.debug("attachment %s unreadable, skipping", attachment.name, exc_info=True)
            return None
    try:
        content = attachment.read_text()
    except (OSError, UnicodeDecodeError):
        logger.debug("attachment %s is not UTF-8 text, skipping", attachment.name, exc_info=True)
        return None
    return text_part(f"\n\n[Attached File: {attachment.name}]\n{content}\n[End of File]")


class PromptComposer:
    def __init__(self, resolver: AttachmentResolver, history_limit: int = HISTORY_LIMIT):
        self.resolver = resolver
        self.history_limit = history_limit

    def compose(
        self,
        conversation: Dict[str, Any],
        mode: Optional[str],
        text: str,
        file_id: Optional[str] = None,
        profile: Optional[Dict[str, Any]] = None,
        current_id: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], List[Dict[str, str]]]:
        """Return ``(prompt_parts, history)`` for one turn."""
        head = f"{system_instruction(mode)}{personalization(profile)}\n\nUser: {text}"
        parts = [text_part(head)]

        attachment = self.resolver.resolve(file_id)
        if attachment is not None:
            extra = attachment_part(attachment)
            if extra is not None:
                parts.append(extra)

        history = history_window(conversation.get("messages") or [], current_id, self.history_limit)
        return parts, history
