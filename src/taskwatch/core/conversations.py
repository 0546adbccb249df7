from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import logging
import os
import threading
from typing import Any, Dict, List, Optional

logger = logging.getLogger("taskwatch.conversations")


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Conversation:
    conversation_id: str
    updated_at: datetime = field(default_factory=_now)
    # session_id -> transcript (list of agent messages, newest last)
    sessions: Dict[str, List[dict]] = field(default_factory=dict)


class ConversationStore:
    """Live conversations, their agent sessions and message transcripts.

    A conversation (and every session under it) counts as live until it is
    deleted; the retention sweep never removes a work directory named after
    a live id.
    """

    def __init__(self, store_path: Optional[str] = None) -> None:
        self._conversations: Dict[str, Conversation] = {}
        self._store_path = store_path
        self._lock = threading.RLock()
        if store_path:
            self._load()

    def _load(self) -> None:
        if not self._store_path or not os.path.exists(self._store_path):
            return
        try:
            with open(self._store_path, "r", encoding="utf-8") as handle:
                raw = json.load(handle)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to load conversations from %s: %s", self._store_path, exc)
            return
        for item in raw.get("conversations", []):
            try:
                conv = Conversation(
                    conversation_id=item["conversation_id"],
                    updated_at=datetime.fromisoformat(item["updated_at"]),
                    sessions={k: list(v) for k, v in item.get("sessions", {}).items()},
                )
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                logger.warning("Skipping malformed conversation entry: %s", exc)
                continue
            self._conversations[conv.conversation_id] = conv

    def _save(self) -> None:
        if not self._store_path:
            return
        dir_path = os.path.dirname(self._store_path)
        if dir_path:
            os.makedirs(dir_path, exist_ok=True)
        payload = {
            "conversations": [
                {
                    "conversation_id": conv.conversation_id,
                    "updated_at": conv.updated_at.isoformat(),
                    "sessions": conv.sessions,
                }
                for conv in self._conversations.values()
            ]
        }
        tmp_path = f"{self._store_path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, default=str)
        os.replace(tmp_path, self._store_path)

    def get(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            return self._conversations.get(conversation_id)

    def upsert_session(self, conversation_id: str, session_id: str) -> Conversation:
        with self._lock:
            conv = self._conversations.get(conversation_id)
            if conv is None:
                conv = Conversation(conversation_id=conversation_id)
                self._conversations[conversation_id] = conv
            conv.sessions.setdefault(session_id, [])
            conv.updated_at = _now()
            self._save()
            return conv

    def append_messages(self, conversation_id: str, session_id: str, messages: List[dict[str, Any]]) -> int:
        """Append transcript messages to a session. Returns the new length."""
        with self._lock:
            conv = self.upsert_session(conversation_id, session_id)
            transcript = conv.sessions[session_id]
            transcript.extend(messages)
            self._save()
            return len(transcript)

    def messages(self, session_id: str) -> List[dict]:
        with self._lock:
            for conv in self._conversations.values():
                if session_id in conv.sessions:
                    return list(conv.sessions[session_id])
            return []

    def delete_conversation(self, conversation_id: str) -> bool:
        with self._lock:
            if self._conversations.pop(conversation_id, None) is None:
                return False
            self._save()
        logger.info("Conversation deleted: %s", conversation_id)
        return True

    def live_ids(self) -> set[str]:
        """Every conversation id and session id currently known."""
        with self._lock:
            ids: set[str] = set()
            for conv in self._conversations.values():
                ids.add(conv.conversation_id)
                ids.update(conv.sessions.keys())
            return ids
