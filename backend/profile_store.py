import json
from typing import Any, Dict, Optional

from .conversation_store import now_iso
from .db import Database

DEFAULT_PREFERENCES: Dict[str, Any] = {
    "voiceEnabled": True,
    "theme": "glassmorphic",
    "language": "en",
    "notifications": True,
}


def normalize_preferences(preferences: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    prefs = dict(DEFAULT_PREFERENCES)
    if isinstance(preferences, dict):
        prefs.update(preferences)
    return prefs


class ProfileStore:
    def __init__(self, db: Database):
        self.db = db

    def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        ph = self.db.ph
        with self.db.transaction() as cur:
            cur.execute(
                f"SELECT user_id, name, preferences FROM profiles WHERE user_id = {ph()}",
                (user_id,),
            )
            row = cur.fetchone()
        if not row:
            return None
        row = dict(row)
        try:
            prefs = json.loads(row["preferences"] or "{}")
        except ValueError:
            prefs = {}
        return {"id": row["user_id"], "name": row["name"], "preferences": normalize_preferences(prefs)}

    def save(self, user_id: str, name: str, preferences: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Create or fully replace the profile for ``user_id``."""
        profile = {
            "id": user_id,
            "name": (name or "").strip(),
            "preferences": normalize_preferences(preferences),
        }
        ph = self.db.ph
        with self.db.transaction() as cur:
            cur.execute(
                f"""
                INSERT INTO profiles (user_id, name, preferences, updated_at)
                VALUES ({ph(4)})
                ON CONFLICT (user_id) DO UPDATE SET
                    name = excluded.name,
                    preferences = excluded.preferences,
                    updated_at = excluded.updated_at
                """,
                (user_id, profile["name"], json.dumps(profile["preferences"]), now_iso()),
            )
        return profile
