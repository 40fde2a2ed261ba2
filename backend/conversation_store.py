import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from .db import Database

MESSAGE_TYPES = ("text", "image", "voice", "file", "systemMessage")


class ConversationNotFound(Exception):
    def __init__(self, convo_id: str):
        super().__init__(f"Conversation not found: {convo_id}")
        self.convo_id = convo_id


class NotConversationOwner(Exception):
    def __init__(self, convo_id: str):
        super().__init__(f"Conversation {convo_id} belongs to another user")
        self.convo_id = convo_id


class ConversationExists(Exception):
    def __init__(self, convo_id: str):
        super().__init__(f"Conversation already exists: {convo_id}")
        self.convo_id = convo_id


def now_iso() -> str:
    # Fixed millisecond precision keeps timestamps lexicographically ordered.
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def gen_id() -> str:
    return str(uuid.uuid4())


def make_message(
    sender: str,
    content: str,
    message_type: str = "text",
    file_id: Optional[str] = None,
    is_error: bool = False,
    model: Optional[str] = None,
    ts: Optional[str] = None,
) -> Dict[str, Any]:
    msg: Dict[str, Any] = {
        "id": gen_id(),
        "sender": sender,
        "content": content,
        "timestamp": ts or now_iso(),
        "messageType": message_type if message_type in MESSAGE_TYPES else "text",
        "isError": bool(is_error),
    }
    if file_id:
        msg["fileId"] = file_id
    if model:
        msg["model"] = model
    return msg


def _message_from_row(row) -> Dict[str, Any]:
    row = dict(row)
    msg: Dict[str, Any] = {
        "id": row["id"],
        "sender": row["sender"],
        "content": row["content"],
        "timestamp": row["ts"],
        "messageType": row["message_type"],
        "isError": bool(row.get("is_error")),
    }
    if row.get("file_id"):
        msg["fileId"] = row["file_id"]
    if row.get("model"):
        msg["model"] = row["model"]
    return msg


def _conversation_from_row(row, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
    row = dict(row)
    return {
        "id": row["id"],
        "user": row["user_id"],
        "messages": messages,
        "startTime": row["start_time"],
        "lastActive": row["last_active"],
    }


class ConversationStore:
    """Conversations and their append-only message logs."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, user_id: str, convo_id: Optional[str] = None) -> Dict[str, Any]:
        convo_id = (convo_id or "").strip() or gen_id()
        now = now_iso()
        ph = self.db.ph
        with self.db.transaction() as cur:
            cur.execute(f"SELECT 1 FROM conversations WHERE id = {ph()}", (convo_id,))
            if cur.fetchone():
                raise ConversationExists(convo_id)
            cur.execute(
                f"""
                INSERT INTO conversations (id, user_id, start_time, last_active)
                VALUES ({ph(4)})
                """,
                (convo_id, user_id, now, now),
            )
        return {
            "id": convo_id,
            "user": user_id,
            "messages": [],
            "startTime": now,
            "lastActive": now,
        }

    def get(self, convo_id: str) -> Optional[Dict[str, Any]]:
        ph = self.db.ph
        with self.db.transaction() as cur:
            cur.execute(
                f"SELECT id, user_id, start_time, last_active FROM conversations WHERE id = {ph()}",
                (convo_id,),
            )
            convo = cur.fetchone()
            if not convo:
                return None
            cur.execute(
                f"""
                SELECT id, sender, content, message_type, file_id, is_error, model, ts
                FROM messages
                WHERE convo_id = {ph()}
                ORDER BY seq ASC
                """,
                (convo_id,),
            )
            msgs = cur.fetchall()
        return _conversation_from_row(convo, [_message_from_row(m) for m in msgs])

    def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        ph = self.db.ph
        with self.db.transaction() as cur:
            cur.execute(
                f"""
                SELECT id, user_id, start_time, last_active
                FROM conversations
                WHERE user_id = {ph()}
                ORDER BY last_active DESC, start_time DESC
                """,
                (user_id,),
            )
            convos = cur.fetchall()
            cur.execute(
                f"""
                SELECT m.convo_id, m.id, m.sender, m.content, m.message_type, m.file_id, m.is_error, m.model, m.ts
                FROM messages m
                JOIN conversations c ON c.id = m.convo_id
                WHERE c.user_id = {ph()}
                ORDER BY m.seq ASC
                """,
                (user_id,),
            )
            rows = cur.fetchall()
        by_convo: Dict[str, List[Dict[str, Any]]] = {}
        for row in rows:
            by_convo.setdefault(dict(row)["convo_id"], []).append(_message_from_row(row))
        return [_conversation_from_row(c, by_convo.get(dict(c)["id"], [])) for c in convos]

    def append_messages(self, convo_id: str, messages: Iterable[Dict[str, Any]]) -> str:
        """Append messages and advance ``last_active`` in one transaction.

        Returns the stored ``last_active``; it never moves backwards.
        """
        messages = list(messages)
        ph = self.db.ph
        with self.db.transaction() as cur:
            cur.execute(f"SELECT last_active FROM conversations WHERE id = {ph()}", (convo_id,))
            row = cur.fetchone()
            if not row:
                raise ConversationNotFound(convo_id)
            last_active = dict(row)["last_active"]
            for msg in messages:
                cur.execute(
                    f"""
                    INSERT INTO messages (id, convo_id, sender, content, message_type, file_id, is_error, model, ts)
                    VALUES ({ph(9)})
                    """,
                    (
                        msg["id"],
                        convo_id,
                        msg["sender"],
                        msg.get("content") or "",
                        msg.get("messageType") or "text",
                        msg.get("fileId"),
                        1 if msg.get("isError") else 0,
                        msg.get("model"),
                        msg["timestamp"],
                    ),
                )
                last_active = max(last_active, msg["timestamp"])
            cur.execute(
                f"UPDATE conversations SET last_active = {ph()} WHERE id = {ph()}",
                (last_active, convo_id),
            )
        return last_active

    def delete(self, user_id: str, convo_id: str) -> None:
        ph = self.db.ph
        with self.db.transaction() as cur:
            cur.execute(f"SELECT user_id FROM conversations WHERE id = {ph()}", (convo_id,))
            row = cur.fetchone()
            if not row:
                raise ConversationNotFound(convo_id)
            if dict(row)["user_id"] != user_id:
                raise NotConversationOwner(convo_id)
            cur.execute(f"DELETE FROM messages WHERE convo_id = {ph()}", (convo_id,))
            cur.execute(f"DELETE FROM conversations WHERE id = {ph()}", (convo_id,))

    def delete_all(self, user_id: str) -> int:
        """Delete every conversation owned by ``user_id``; others are untouched."""
        ph = self.db.ph
        with self.db.transaction() as cur:
            cur.execute(
                f"""
                DELETE FROM messages
                WHERE convo_id IN (SELECT id FROM conversations WHERE user_id = {ph()})
                """,
                (user_id,),
            )
            cur.execute(f"DELETE FROM conversations WHERE user_id = {ph()}", (user_id,))
            return cur.rowcount or 0
