# buybot/conversation.py
import time
from enum import Enum
from typing import Dict, Optional, Tuple

from buybot.config import CONVERSATION_TIMEOUT_SECONDS


class ChatState(Enum):
    IDLE = "idle"
    AWAITING_IMAGE = "awaiting_image"
    AWAITING_EMOJI = "awaiting_emoji"


class ConversationTracker:
    """Per-chat "next message" state.

    A menu action moves a chat into an awaiting state; the next matching
    message consumes it and the chat returns to IDLE. Unanswered prompts
    expire after ``timeout`` seconds. Photos uploaded while idle are kept as
    pending until /setbuyimage confirms them.
    """

    def __init__(self, timeout: float = CONVERSATION_TIMEOUT_SECONDS, clock=time.monotonic):
        self.timeout = timeout
        self._clock = clock
        self._states: Dict[int, Tuple[ChatState, float]] = {}
        self._pending_images: Dict[int, str] = {}

    def begin(self, chat_id: int, state: ChatState) -> None:
        if state is ChatState.IDLE:
            self.reset(chat_id)
            return
        self._states[chat_id] = (state, self._clock() + self.timeout)

    def state(self, chat_id: int) -> ChatState:
        entry = self._states.get(chat_id)
        if entry is None:
            return ChatState.IDLE
        state, expires = entry
        if self._clock() >= expires:
            self._states.pop(chat_id, None)
            return ChatState.IDLE
        return state

    def consume(self, chat_id: int, expected: ChatState) -> bool:
        if self.state(chat_id) is not expected:
            return False
        self._states.pop(chat_id, None)
        return True

    def reset(self, chat_id: int) -> None:
        self._states.pop(chat_id, None)

    def stash_image(self, chat_id: int, file_id: str) -> None:
        self._pending_images[chat_id] = file_id

    def pop_image(self, chat_id: int) -> Optional[str]:
        return self._pending_images.pop(chat_id, None)
