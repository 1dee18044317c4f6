import json
import logging
import os

from courier.memory.records import Context

log = logging.getLogger(__name__)

EXCERPT_CHARS = 200


class ContextBuilder:
    """Reads requester context from `<profiles_dir>/<profile_id>/`.

    Nothing here raises: a missing or unreadable source leaves its field empty.
    """

    def __init__(self, profiles_dir, default_profile_id=None):
        self.profiles_dir = os.fspath(profiles_dir)
        self.default_profile_id = default_profile_id or None

    def profile_ids(self):
        try:
            return sorted(
                name for name in os.listdir(self.profiles_dir)
                if os.path.isdir(os.path.join(self.profiles_dir, name))
            )
        except OSError:
            return []

    def fetch(self, profile_id=None):
        profile_id = profile_id or self.default_profile_id
        if not profile_id:
            ids = self.profile_ids()
            profile_id = ids[0] if ids else None

        context = Context(profile_id=profile_id)
        if not profile_id or os.sep in profile_id or profile_id.startswith("."):
            return context

        base = os.path.join(self.profiles_dir, profile_id)

        try:
            with open(os.path.join(base, "profile.md"), encoding="utf-8") as f:
                context.profile = f.read()
        except FileNotFoundError:
            pass
        except (OSError, UnicodeDecodeError) as e:
            log.warning(f"[context] {profile_id}: profile unreadable: {e}")

        challenges_dir = os.path.join(base, "challenges")
        try:
            if os.path.isdir(challenges_dir):
                for name in sorted(os.listdir(challenges_dir)):
                    if not name.endswith(".md"):
                        continue
                    with open(os.path.join(challenges_dir, name), encoding="utf-8") as f:
                        context.challenges.append({"name": name, "excerpt": f.read(EXCERPT_CHARS)})
        except (OSError, UnicodeDecodeError) as e:
            log.warning(f"[context] {profile_id}: challenges unreadable: {e}")

        todos_dir = os.path.join(base, "todos")
        try:
            if os.path.isdir(todos_dir):
                files = sorted(f for f in os.listdir(todos_dir) if f.endswith(".json"))
                if files:
                    with open(os.path.join(todos_dir, files[-1]), encoding="utf-8") as f:
                        context.todos = json.load(f)
        except (OSError, ValueError) as e:
            log.warning(f"[context] {profile_id}: todos unreadable: {e}")

        return context


def pending_todos(todos):
    if not isinstance(todos, list):
        return []
    return [t for t in todos if not (isinstance(t, dict) and t.get("status") == "completed")]


def render(context):
    """Build a text summary of the requester's context for the responder."""
    if context is None or not context.profile_id:
        return "No user context available."

    sections = [f"USER: {context.profile_id}"]

    if context.profile:
        sections.append("PROFILE:\n" + context.profile.strip())

    if context.challenges:
        lines = ["ACTIVE CHALLENGES:"]
        for c in context.challenges:
            excerpt = " ".join(c["excerpt"].split())
            lines.append(f"  - {c['name']} | {excerpt}")
        sections.append("\n".join(lines))

    tasks = pending_todos(context.todos)
    if tasks:
        lines = ["TODAY'S TASKS:"]
        for t in tasks:
            if isinstance(t, dict):
                title = t.get("title") or t.get("text") or t.get("content") or "Untitled"
                line = f"  - {title}"
                if t.get("status"):
                    line += f" [{t['status']}]"
            else:
                line = f"  - {t}"
            lines.append(line)
        sections.append("\n".join(lines))
    elif context.todos is not None:
        sections.append("TODAY'S TASKS: None pending")

    return "\n\n".join(sections)
