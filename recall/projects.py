"""
Project extraction from finalized activity sessions.

A session's project comes from the AI-reported ``project_name`` of its
members (most common wins). When no member names a project, heuristics
look for one in window titles, URLs and file names:
- File paths under common workspace roots (most reliable)
- GitHub/GitLab repository URLs
- Feature branches in terminal prompts
- For development sessions carrying technologies, the first specific tag

Projects are resolved by normalized name ("My_Project", "my project" and
"my-project" are the same project), technologies are unioned and the
first/last seen window only ever widens. Nothing here deletes a project.
"""

import hashlib
import logging
import re
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import List, Optional, TYPE_CHECKING

from .markdown import slugify
from .models import ActivitySession, Project, ScreenshotAnalysis

if TYPE_CHECKING:
    from .config import ConfigManager
    from .markdown import MarkdownWriter
    from .storage import MemoryStorage

logger = logging.getLogger(__name__)

STATE_LAST_BACKFILL = 'last_project_backfill'

GENERIC_NAMES = {
    'src', 'app', 'lib', 'bin', 'home', 'user', 'root', 'tmp', 'main', 'master',
    'work', 'coding', 'programming', 'browsing', 'communication', 'development',
    'learning', 'reading', 'debugging', 'writing', 'email', 'chat', 'meeting',
}

DEV_APPS = ('code', 'vscode', 'intellij', 'pycharm', 'xcode', 'android studio',
            'cursor', 'zed', 'vim', 'emacs', 'sublime', 'terminal', 'iterm')


def normalize_name(name: str) -> str:
    """Lowercase and collapse whitespace, dashes and underscores to one dash."""
    return re.sub(r'[\s_\-]+', '-', (name or '').strip().lower()).strip('-')


def project_id(normalized: str) -> str:
    """Stable id for a normalized name.

    The slug is for readability only; names that slugify alike
    ("my.project" and "my-project") differ in the hash suffix.
    """
    digest = hashlib.sha1(normalized.encode('utf-8')).hexdigest()[:8]
    return f"project-{slugify(normalized)}-{digest}"


@dataclass
class ProjectContext:
    """A heuristic project detection"""
    name: str
    confidence: float                  # 0.0 - 1.0
    source: str                        # "path", "github", "gitlab", "git_branch", "tag"
    identifiers: list[str] = field(default_factory=list)


class ProjectDetector:
    """
    Detect a project name from window metadata when the AI gave none.

    Strategies, in order:
    1. File paths in editor/terminal titles and reported file names
    2. GitHub/GitLab repository URLs
    3. Feature branches in terminal prompts
    """

    PATH_PATTERNS = [
        # /home/user/projects/PROJECT_NAME/...
        r'/(?:home|Users)/[^/]+/(?:projects?|repos?|dev|src|code|work|Developer)/([^/\s]+)',
        # /home/user/PROJECT_NAME/src/...
        r'/(?:home|Users)/[^/]+/([^/\s]+)/(?:src|lib|app|pkg|cmd)/',
        # ~/PROJECT_NAME - ...  (VS Code style)
        r'~/([^/\s]+)\s*[-–]',
        # PROJECT_NAME/file.py - Editor
        r'^([a-zA-Z][\w-]+)/[\w/]+\.\w+\s*[-–]',
    ]

    REPO_PATTERNS = [
        (r'github\.com/([^/\s]+)/([^/\s#?]+)', 'github'),
        (r'gitlab\.com/([^/\s]+)/([^/\s#?]+)', 'gitlab'),
    ]

    BRANCH_PATTERNS = [
        r'git:\(?([\w.-]+/[\w./-]+)\)?',
        r'\(([\w.-]+/[\w./-]+)\)',
    ]

    def detect(self, texts: List[str]) -> Optional[ProjectContext]:
        """Return the most confident detection across the given strings."""
        best = None
        for text in texts:
            if not text:
                continue
            for context in (self._from_path(text), self._from_repo(text), self._from_branch(text)):
                if context and (best is None or context.confidence > best.confidence):
                    best = context
        return best

    def _from_path(self, text: str) -> Optional[ProjectContext]:
        for pattern in self.PATH_PATTERNS:
            match = re.search(pattern, text)
            if match:
                name = match.group(1).lower()
                if name not in GENERIC_NAMES and not name.startswith('.'):
                    return ProjectContext(name=name, confidence=0.85, source="path",
                                          identifiers=[match.group(0)])
        return None

    def _from_repo(self, text: str) -> Optional[ProjectContext]:
        for pattern, source in self.REPO_PATTERNS:
            match = re.search(pattern, text, re.I)
            if match:
                repo = match.group(2).lower()
                if repo.endswith('.git'):
                    repo = repo[:-4]
                return ProjectContext(name=repo, confidence=0.8, source=source,
                                      identifiers=[match.group(0)])
        return None

    def _from_branch(self, text: str) -> Optional[ProjectContext]:
        for pattern in self.BRANCH_PATTERNS:
            match = re.search(pattern, text)
            if match:
                prefix = match.group(1).split('/')[0].lower()
                if prefix not in ('feature', 'fix', 'bugfix', 'hotfix', 'release', 'chore', 'origin'):
                    return ProjectContext(name=prefix, confidence=0.6, source="git_branch",
                                          identifiers=[match.group(1)])
        return None


class ProjectExtractor:
    """Maintains Project records from closed sessions.

    Attributes:
        storage: MemoryStorage instance
        config: ConfigManager instance
        markdown: MarkdownWriter for project artifacts
        detector: ProjectDetector used when no member names a project
    """

    def __init__(self, storage: "MemoryStorage", config: "ConfigManager",
                 markdown: "MarkdownWriter", detector: ProjectDetector = None):
        self.storage = storage
        self.config = config
        self.markdown = markdown
        self.detector = detector or ProjectDetector()

    def resolve_name(self, session: ActivitySession,
                     members: List[ScreenshotAnalysis]) -> Optional[str]:
        """Pick the project name for a session, or None if there is none."""
        names = [m.project_name for m in members if m.project_name]
        if names:
            counts = Counter(normalize_name(n) for n in names)
            best = max(counts.values())
            for name in names:
                if counts[normalize_name(name)] == best:
                    return name

        texts = []
        for member in members:
            texts += [member.window_title, member.url] + list(member.file_names)
        context = self.detector.detect(texts)

        technologies = [t for m in members for t in m.technologies]
        is_dev = any(app in (session.application or '').lower() for app in DEV_APPS)
        if context is None and technologies and is_dev:
            tech_names = {t.lower() for t in technologies}
            for tag in session.tags:
                if tag.lower() not in GENERIC_NAMES and tag.lower() not in tech_names:
                    context = ProjectContext(name=tag, confidence=0.6, source="tag", identifiers=[tag])
                    break

        if context is None:
            return None
        if context.confidence < self.config.config.projects.min_confidence:
            logger.debug(f"Ignoring low-confidence project '{context.name}' ({context.confidence:.2f})")
            return None
        return context.name

    def extract(self, session: ActivitySession) -> Optional[Project]:
        """Resolve or create the project for one closed session.

        Returns:
            The updated Project, or None if the session names no project
        """
        members = self.storage.get_session_analyses(session.id)
        name = self.resolve_name(session, members)
        if not name or not normalize_name(name):
            return None

        technologies = []
        for member in members:
            technologies += [t for t in member.technologies if t not in technologies]

        def unit(conn):
            normalized = normalize_name(name)
            project = self.storage.get_project_by_normalized_name(normalized, conn)
            if project is None:
                project = Project(
                    id=project_id(normalized),
                    name=name,
                    normalized_name=normalized,
                    first_seen=session.start_time,
                    last_seen=session.end_time,
                )
                logger.info(f"Created project '{name}' from session {session.id}")
            known = {t.lower() for t in project.technologies}
            for tech in technologies:
                if tech.lower() not in known:
                    project.technologies.append(tech)
                    known.add(tech.lower())
            project.first_seen = min(project.first_seen, session.start_time)
            project.last_seen = max(project.last_seen, session.end_time)
            project.markdown_path = self.markdown.project_path(project)
            self.storage.save_project(project, conn)
            self.storage.link_project_session(project.id, session.id, conn)
            if session.id not in project.session_ids:
                project.session_ids.append(session.id)
            self.storage.after_commit(lambda: self.markdown.write_project(project))
            return project

        return self.storage.run_transaction(unit)

    def on_session_closed(self, session: ActivitySession) -> None:
        try:
            self.extract(session)
        except Exception as e:
            logger.warning(f"Project extraction failed for {session.id}: {e}")

    def process_unlinked(self, now: Optional[int] = None) -> int:
        """Backfill projects for closed sessions with no project link.

        Only sessions closed since the previous pass are scanned. The
        high-water mark stops short of a session whose extraction failed,
        so it is retried on the next pass.

        Returns:
            Number of sessions linked to a project
        """
        cutoff = int(now if now is not None else time.time()) - 1
        mark = int(self.storage.get_state(STATE_LAST_BACKFILL, '0'))
        if cutoff <= mark:
            return 0

        linked = 0
        for session in self.storage.get_sessions_without_project(mark, cutoff):
            try:
                if self.extract(session):
                    linked += 1
            except Exception as e:
                logger.warning(f"Project extraction failed for {session.id}: {e}")
                cutoff = (session.closed_at or session.end_time) - 1
                break
        self.storage.set_state(STATE_LAST_BACKFILL, str(max(mark, cutoff)))
        if linked:
            logger.info(f"Linked {linked} sessions to projects")
        return linked
