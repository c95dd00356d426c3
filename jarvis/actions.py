"""User actions (goals), salutation preference and action analysis.

Goals and the analytics blob live as whole JSON documents on the user row.
Every write is a compare-and-set on users.version; a lost race re-reads the
row and re-applies the change.
"""

import logging
import time
from collections import Counter
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 5

KEYWORDS = ("meeting", "email", "call", "review", "prepare", "send", "schedule", "finish", "create", "update")
URGENT_MARKERS = ("urgent", "important", "asap")
RECURRING_MARKERS = ("daily", "weekly", "every")

DEFAULT_SUGGESTIONS = [
    "Sir, I recommend reviewing and prioritizing your pending operations",
    "May I suggest establishing three strategic objectives for today",
    "Critical tasks require immediate scheduling, as you prefer",
]

SMART_ACTIONS_SYSTEM = ("You are JARVIS, analyzing tasks with precision. "
                        "Return only valid JSON with strategic insights.")
INSIGHTS_SYSTEM = ("You are JARVIS, providing strategic productivity insights. Return only valid JSON "
                   "with patterns, recommendations, and productivity_tips arrays.")


class ConflictError(RuntimeError):
    """A user document kept changing underneath us."""


def iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso(value) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class ActionService:
    """Goal CRUD plus salutation storage on top of JarvisDB.

    Args:
        db: JarvisDB instance.
        clock: Callable returning epoch seconds.
    """

    def __init__(self, db, clock=time.time):
        self.db = db
        self.clock = clock

    def _update_document(self, uid: str, column: str, mutate):
        """Read-modify-write one user document with optimistic concurrency.

        mutate(current) returns (result, new_document). A new_document of
        None means nothing to write and result is returned as-is.
        """
        save = self.db.save_goals if column == "goals" else self.db.save_analytics
        for _ in range(MAX_WRITE_ATTEMPTS):
            user = self.db.get_user(uid)
            version = user["version"] if user else None
            if column == "goals":
                current = list((user or {}).get("goals") or [])
            else:
                current = dict((user or {}).get("analytics") or {})
            result, updated = mutate(current)
            if updated is None:
                return result
            if save(uid, updated, version):
                return result
            logger.debug(f"Version conflict writing {column} for {uid}, retrying")
        raise ConflictError(f"Could not update {column} for {uid}")

    # --- Actions ---

    def list_actions(self, uid: str) -> list[dict]:
        user = self.db.get_user(uid)
        goals = list((user or {}).get("goals") or [])
        goals.sort(key=lambda g: g.get("created_at") or "", reverse=True)
        return goals

    def create_action(self, uid: str, action_type: str, text: str, date: str | None = None) -> dict:
        def mutate(goals):
            now = self.clock()
            goal_id = int(now * 1000)
            taken = {g.get("id") for g in goals}
            while goal_id in taken:
                goal_id += 1
            goal = {
                "id": goal_id,
                "type": action_type or "task",
                "text": text,
                "date": date,
                "completed": False,
                "created_at": iso(now),
            }
            return goal, goals + [goal]

        return self._update_document(uid, "goals", mutate)

    def update_action(self, uid: str, action_id, completed: bool) -> dict | None:
        """Set an action's completion state. Returns None if the id is unknown."""
        def mutate(goals):
            for goal in goals:
                if str(goal.get("id")) == str(action_id):
                    goal["completed"] = bool(completed)
                    goal["completed_at"] = iso(self.clock()) if completed else None
                    return goal, goals
            return None, None

        return self._update_document(uid, "goals", mutate)

    def delete_action(self, uid: str, action_id) -> bool:
        def mutate(goals):
            remaining = [g for g in goals if str(g.get("id")) != str(action_id)]
            if len(remaining) == len(goals):
                return False, None
            return True, remaining

        return self._update_document(uid, "goals", mutate)

    # --- Preferences ---

    def set_salutation(self, uid: str, salutation: str) -> str:
        value = str(salutation or "").lower()

        def mutate(analytics):
            analytics["salutation"] = value
            return value, analytics

        return self._update_document(uid, "analytics", mutate)

    # --- Analysis ---

    def analytics(self, uid: str) -> dict:
        sessions = self.db.get_sessions(uid)
        user = self.db.get_user(uid)
        return {
            "uid": uid,
            "total_sessions": len(sessions),
            "total_messages": sum(len(s.get("messages") or []) for s in sessions),
            "total_actions": len((user or {}).get("goals") or []),
            "last_activity": sessions[0]["last_activity"] if sessions else None,
            "recent_sessions": sessions[:10],
        }

    async def smart_actions(self, uid: str, synthesizer=None) -> dict:
        """Prioritise pending actions with keyword heuristics plus optional model output."""
        actions = self.list_actions(uid)
        pending = [a for a in actions if not a.get("completed")]

        ai = {"high_priority": [], "recurring_patterns": [], "suggestions": [], "auto_categorization": {}}
        if synthesizer is not None and pending:
            prompt = (
                "Analyze these tasks and provide smart prioritization:\n"
                f"{[a.get('text', '') for a in pending]}\n\n"
                "Return a JSON object with:\n"
                "1. high_priority: array of task indices that are urgent\n"
                "2. recurring_patterns: array of detected patterns\n"
                "3. suggestions: array of 2-3 actionable suggestions\n"
                "4. auto_categorization: object mapping task indices to categories"
            )
            parsed = await synthesizer.complete_json(SMART_ACTIONS_SYSTEM, prompt, temperature=0.3, max_tokens=500)
            if parsed:
                for key in ai:
                    if isinstance(parsed.get(key), type(ai[key])):
                        ai[key] = parsed[key]

        high_priority = [
            a for i, a in enumerate(pending)
            if any(m in a.get("text", "").lower() for m in URGENT_MARKERS) or i in ai["high_priority"]
        ]
        recurring = [a for a in actions if any(m in a.get("text", "").lower() for m in RECURRING_MARKERS)]

        today = datetime.fromtimestamp(self.clock(), timezone.utc).date()
        created_today = 0
        for a in actions:
            created = parse_iso(a.get("created_at") or a.get("created"))
            if created and created.date() == today:
                created_today += 1

        return {
            "actions": actions,
            "pending": pending,
            "high_priority": high_priority,
            "recurring_patterns": recurring + list(ai["recurring_patterns"]),
            "suggestions": ai["suggestions"] or list(DEFAULT_SUGGESTIONS),
            "categorization": ai["auto_categorization"],
            "stats": {
                "total": len(actions),
                "pending": len(pending),
                "completed": sum(1 for a in actions if a.get("completed")),
                "today": created_today,
            },
        }

    async def insights(self, uid: str, synthesizer=None) -> dict:
        """Summarise when and what kind of actions the user records."""
        actions = self.list_actions(uid)
        sessions = self.db.get_sessions(uid, limit=50)

        task_types = Counter()
        weekdays = Counter()
        hours = Counter()
        keywords = Counter()
        for a in actions:
            task_types[a.get("type") or "task"] += 1
            created = parse_iso(a.get("created_at") or a.get("created"))
            if created:
                weekdays[created.strftime("%A")] += 1
                hours[created.hour] += 1
            for word in a.get("text", "").lower().split():
                if word in KEYWORDS:
                    keywords[word] += 1

        top_keywords = [list(kv) for kv in keywords.most_common(5)]
        busiest_day = list(weekdays.most_common(1)[0]) if weekdays else None
        peak_hour = list(hours.most_common(1)[0]) if hours else None

        ai = {"patterns": [], "recommendations": [], "productivity_tips": []}
        if synthesizer is not None and len(actions) > 5:
            prompt = (
                "Analyze this user's task patterns and provide insights:\n"
                f"Top keywords: {top_keywords}\n"
                f"Task types: {dict(task_types)}\n"
                f"Busiest day: {busiest_day}\n"
                "Provide 3 patterns, 3 recommendations, and 2 productivity tips as JSON."
            )
            parsed = await synthesizer.complete_json(INSIGHTS_SYSTEM, prompt, temperature=0.5, max_tokens=400)
            if parsed:
                for key in ai:
                    if isinstance(parsed.get(key), list):
                        ai[key] = parsed[key]

        recommendations = ai["recommendations"] or [
            (f"Sir, your optimal performance occurs on {busiest_day[0]}s. "
             "I suggest scheduling critical operations accordingly")
            if busiest_day else "Shall I begin tracking your patterns for strategic optimization?",
            (f"Your cognitive peak is at {peak_hour[0]}:00 hours. Reserve this time for complex problem-solving")
            if peak_hour else "I shall identify your peak performance windows, sir",
            "May I suggest creating automated protocols for your recurring operations?",
        ]

        completed = sum(1 for a in actions if a.get("completed"))
        return {
            "patterns": {
                "top_keywords": top_keywords,
                "busiest_day": busiest_day,
                "peak_hour": peak_hour,
                "task_types": dict(task_types),
                "ai_discovered": ai["patterns"],
            },
            "recommendations": recommendations,
            "productivity_tips": ai["productivity_tips"],
            "stats": {
                "total_actions": len(actions),
                "total_sessions": len(sessions),
                "completion_rate": round(completed / (len(actions) or 1) * 100),
            },
        }
