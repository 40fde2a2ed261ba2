"""
Turn orchestration.

One call to ``TurnOrchestrator.handle_turn`` takes a conversation through
RECEIVED -> PERSISTED_USER_MSG -> GENERATING -> PERSISTED_AI_MSG or
PERSISTED_ERROR_MSG. Provider failures become an error-flagged assistant
message; only a missing or foreign conversation is raised to the caller.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from . import config
from .conversation_store import (
    ConversationNotFound,
    ConversationStore,
    NotConversationOwner,
    make_message,
)
from .llm_core import UpstreamUnavailable, generate_with_fallback
from .profile_store import ProfileStore
from .prompting import PromptComposer

logger = logging.getLogger(__name__)

USER_SENDER = "user"
AI_SENDER = "ai"
ERROR_REPLY = "Sorry, I couldn't come up with a reply just now. Please try again in a moment."


@dataclass
class TurnResult:
    conversation: Dict[str, Any]
    user_message: Dict[str, Any]
    ai_message: Optional[Dict[str, Any]]


class _LockEntry:
    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = threading.Lock()
        self.holders = 0


class ConversationLocks:
    """One lock per conversation id so turns on the same thread of talk never interleave.

    Entries live only while some turn holds or waits on them.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, _LockEntry] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, convo_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(convo_id)
            if entry is None:
                entry = self._locks[convo_id] = _LockEntry()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[convo_id]


class TurnOrchestrator:
    def __init__(
        self,
        conversations: ConversationStore,
        profiles: ProfileStore,
        composer: PromptComposer,
        provider,
        models: Optional[Sequence[str]] = None,
        backoff: Optional[float] = None,
        sleep: Optional[Callable[[float], None]] = None,
        diagnostics: Optional[logging.Logger] = None,
    ):
        self.conversations = conversations
        self.profiles = profiles
        self.composer = composer
        self.provider = provider
        self.models: List[str] = list(models) if models is not None else config.candidate_models()
        if not self.models:
            raise ValueError("fallback chain needs at least one model")
        self.backoff = backoff
        self.sleep = sleep
        self.diagnostics = diagnostics
        self.locks = ConversationLocks()

    def handle_turn(
        self,
        user_id: str,
        convo_id: str,
        content: str,
        sender: str = USER_SENDER,
        message_type: str = "text",
        mode: Optional[str] = None,
        file_id: Optional[str] = None,
    ) -> TurnResult:
        # Reject unknown and foreign ids before a lock entry exists for them.
        self._check_access(user_id, convo_id)
        with self.locks.hold(convo_id):
            return self._run_turn(user_id, convo_id, content, sender, message_type, mode, file_id)

    def _check_access(self, user_id: str, convo_id: str) -> Dict[str, Any]:
        convo = self.conversations.get(convo_id)
        if convo is None:
            raise ConversationNotFound(convo_id)
        if convo["user"] != user_id:
            raise NotConversationOwner(convo_id)
        return convo

    def _run_turn(
        self,
        user_id: str,
        convo_id: str,
        content: str,
        sender: str,
        message_type: str,
        mode: Optional[str],
        file_id: Optional[str],
    ) -> TurnResult:
        # Re-read under the lock: an earlier turn may have appended meanwhile.
        convo = self._check_access(user_id, convo_id)

        user_msg = make_message(sender or USER_SENDER, content, message_type, file_id=file_id)
        convo["messages"].append(user_msg)
        convo["lastActive"] = max(convo["lastActive"], user_msg["timestamp"])
        appended = [user_msg]
        logger.info("TURN %s: received %s message len=%d", convo_id, user_msg["sender"], len(content or ""))

        ai_msg = None
        if user_msg["sender"] == USER_SENDER:
            ai_msg = self._generate(user_id, convo, user_msg, mode, file_id)
            convo["messages"].append(ai_msg)
            appended.append(ai_msg)

        convo["lastActive"] = self.conversations.append_messages(convo_id, appended)
        return TurnResult(conversation=convo, user_message=user_msg, ai_message=ai_msg)

    def _generate(
        self,
        user_id: str,
        convo: Dict[str, Any],
        user_msg: Dict[str, Any],
        mode: Optional[str],
        file_id: Optional[str],
    ) -> Dict[str, Any]:
        profile = self.profiles.get(user_id)
        prompt, history = self.composer.compose(
            convo,
            mode,
            user_msg["content"],
            file_id=file_id,
            profile=profile,
            current_id=user_msg["id"],
        )
        kwargs: Dict[str, Any] = {"backoff": self.backoff, "diagnostics": self.diagnostics}
        if self.sleep is not None:
            kwargs["sleep"] = self.sleep
        try:
            text, model_id = generate_with_fallback(self.provider, self.models, prompt, history, **kwargs)
        except UpstreamUnavailable as exc:
            logger.error("TURN %s: all models failed: %s", convo["id"], exc)
            if self.diagnostics is not None:
                self.diagnostics.error(
                    "turn failed convo=%s attempted=%s: %s",
                    convo["id"],
                    ",".join(exc.attempted),
                    exc,
                    exc_info=exc.last_error or exc,
                )
            return make_message(AI_SENDER, ERROR_REPLY, "text", is_error=True)
        return make_message(AI_SENDER, text, "text", model=model_id)
