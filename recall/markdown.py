"""Markdown artifacts for sessions, projects, habits and summaries.

Each artifact is a markdown file with a YAML frontmatter block, written
under the memory root:

    activities/<YYYY-MM-DD>/<session id>.md
    projects/<slug>-<hash>.md
    habits/<slug>.md
    summaries/<daily|weekly|monthly>/<date_start>.md

Rendering is deterministic for a given record, so rewriting an artifact
for unchanged input produces a byte-identical file.
"""

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import yaml

from .models import ActivitySession, Habit, Project, Summary

logger = logging.getLogger(__name__)


def slugify(text: str) -> str:
    slug = re.sub(r'[^a-z0-9]+', '-', (text or '').lower()).strip('-')
    return slug or 'untitled'


def format_duration(seconds: float) -> str:
    """Format seconds as '2h 15m' or '45m'."""
    minutes = int(seconds // 60)
    if minutes < 60:
        return f"{minutes}m"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m" if minutes else f"{hours}h"


def _clock(ts: int) -> str:
    return datetime.fromtimestamp(ts).strftime('%H:%M')


def _frontmatter(meta: dict, body: str) -> str:
    header = yaml.safe_dump(meta, sort_keys=False, allow_unicode=True, default_flow_style=False)
    return f"---\n{header}---\n\n{body.rstrip()}\n"


class MarkdownWriter:
    """Render records to markdown files under a memory root.

    Attributes:
        root: Directory artifacts are written under
    """

    def __init__(self, root):
        self.root = Path(root).expanduser()

    def _write(self, relative: str, content: str) -> str:
        path = self.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix('.md.tmp')
        tmp.write_text(content, encoding='utf-8')
        tmp.replace(path)
        logger.debug(f"Wrote {path}")
        return relative

    def read(self, relative: str) -> Optional[str]:
        path = self.root / relative
        return path.read_text(encoding='utf-8') if path.exists() else None

    @staticmethod
    def session_path(session: ActivitySession) -> str:
        day = datetime.fromtimestamp(session.start_time).strftime('%Y-%m-%d')
        return f"activities/{day}/{session.id}.md"

    @staticmethod
    def project_path(project: Project) -> str:
        return f"projects/{project.id.removeprefix('project-')}.md"

    @staticmethod
    def habit_path(habit: Habit) -> str:
        return f"habits/{habit.id.removeprefix('habit-')}.md"

    @staticmethod
    def summary_path(summary: Summary) -> str:
        return f"summaries/{summary.summary_type.lower()}/{summary.date_start}.md"

    def write_session(self, session: ActivitySession, technologies: List[str] = None,
                      accomplishments: List[str] = None) -> str:
        """Write a closed session. Returns the path relative to the root."""
        day = datetime.fromtimestamp(session.start_time).strftime('%Y-%m-%d')
        meta = {
            'id': session.id,
            'title': session.title,
            'date': day,
            'start_time': datetime.fromtimestamp(session.start_time).isoformat(),
            'end_time': datetime.fromtimestamp(session.end_time).isoformat(),
            'duration_minutes': session.duration_seconds // 60,
            'application': session.application,
            'category': session.category,
            'tags': list(session.tags),
            'segments': len(session.segment_ids),
        }
        if technologies:
            meta['technologies'] = list(technologies)

        lines = [f"# {session.title}", ""]
        lines.append(
            f"{_clock(session.start_time)} - {_clock(session.end_time)} "
            f"({format_duration(session.duration_seconds)}) in {session.application}"
        )
        if session.summary:
            lines += ["", "## Summary", "", session.summary]
        if accomplishments:
            lines += ["", "## Accomplishments", ""]
            lines += [f"- {item}" for item in accomplishments]
        if session.segment_summaries:
            lines += ["", "## Timeline", ""]
            lines += [f"- {text}" for text in session.segment_summaries if text]

        return self._write(self.session_path(session), _frontmatter(meta, "\n".join(lines)))

    def write_project(self, project: Project) -> str:
        meta = {
            'id': project.id,
            'name': project.name,
            'technologies': list(project.technologies),
            'first_seen': datetime.fromtimestamp(project.first_seen).isoformat(),
            'last_seen': datetime.fromtimestamp(project.last_seen).isoformat(),
            'sessions': len(project.session_ids),
        }
        lines = [f"# {project.name}", ""]
        if project.technologies:
            lines.append("Technologies: " + ", ".join(project.technologies))
            lines.append("")
        lines.append("## Sessions")
        lines.append("")
        lines += [f"- {sid}" for sid in project.session_ids]
        return self._write(self.project_path(project), _frontmatter(meta, "\n".join(lines)))

    def write_habit(self, habit: Habit) -> str:
        meta = {
            'id': habit.id,
            'pattern_name': habit.pattern_name,
            'pattern_type': habit.pattern_type,
            'confidence': round(habit.confidence, 3),
            'frequency': habit.frequency,
            'occurrences': habit.occurrence_count,
        }
        if habit.typical_time:
            meta['typical_time'] = habit.typical_time
        if habit.trigger_conditions:
            meta['trigger_conditions'] = habit.trigger_conditions
        body = [
            f"# {habit.pattern_name}",
            "",
            f"Observed {habit.occurrence_count} times ({habit.frequency}), "
            f"confidence {habit.confidence:.0%}.",
        ]
        return self._write(self.habit_path(habit), _frontmatter(meta, "\n".join(body)))

    def write_summary(self, summary: Summary) -> str:
        meta = {
            'id': summary.id,
            'type': summary.summary_type,
            'date_start': summary.date_start,
            'date_end': summary.date_end,
            'activities': len(summary.activity_ids),
            'projects': list(summary.project_ids),
            'insufficient_data': summary.insufficient_data,
        }
        return self._write(self.summary_path(summary), _frontmatter(meta, summary.content))
