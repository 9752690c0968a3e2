"""Pipeline wiring and background tasks.

PipelineContext is the one handle every task and surface receives. It owns
the store, the components and the two locks:

- grouping_lock: analyses are grouped strictly one at a time
- batch_lock: habit detection and summary generation never interleave

IngestTask is event-driven (an analysis arrives). IntervalTask runs the
periodic maintenance jobs on its own thread.
"""

import logging
import threading
import time
from typing import List, Optional, Tuple, Union

from .analyzer import SegmentAnalyzer
from .config import ConfigManager
from .errors import PipelineUnavailableError
from .grouper import ActivityGrouper, GroupingResult
from .habits import HabitDetector
from .markdown import MarkdownWriter
from .models import ScreenshotAnalysis
from .projects import ProjectExtractor
from .providers import VisionProvider, create_provider
from .storage import MemoryStorage
from .suggestions import SuggestionEngine
from .summaries import SummaryGenerator

logger = logging.getLogger(__name__)

STATE_ENABLED = 'enabled'
STATE_LAST_HABIT_RUN = 'last_habit_run'


class PipelineContext:
    """Explicit handle to the store and every pipeline component.

    Attributes:
        config: ConfigManager
        storage: MemoryStorage
        markdown: MarkdownWriter rooted at the memory directory
        provider: VisionProvider, or None when running without AI
        grouper, projects, habits, summaries, suggestions: components
        ingest: IngestTask
        interval: IntervalTask
    """

    def __init__(self, config: ConfigManager, storage: MemoryStorage, markdown: MarkdownWriter,
                 provider: Optional[VisionProvider] = None):
        self.config = config
        self.storage = storage
        self.markdown = markdown
        self.provider = provider
        self.grouping_lock = threading.Lock()
        self.batch_lock = threading.Lock()

        self.grouper = ActivityGrouper(storage, config, markdown)
        self.projects = ProjectExtractor(storage, config, markdown)
        self.habits = HabitDetector(storage, config, markdown, batch_lock=self.batch_lock)
        self.summaries = SummaryGenerator(storage, config, markdown, provider=provider,
                                          batch_lock=self.batch_lock)
        self.suggestions = SuggestionEngine(storage, config)
        self.analyzer = SegmentAnalyzer(provider, config.config.ai.max_retries) if provider else None

        self.grouper.add_listener(self.projects.on_session_closed)
        self.grouper.add_listener(self.suggestions.on_session_closed)
        self.habits.add_listener(self.suggestions.on_habits_updated)

        self.ingest = IngestTask(self)
        self.interval = IntervalTask(self)

    @property
    def enabled(self) -> bool:
        default = '1' if self.config.config.pipeline.enabled else '0'
        return self.storage.get_state(STATE_ENABLED, default) == '1'

    def set_enabled(self, enabled: bool) -> None:
        """Turn the pipeline on or off.

        Turning it off lets the unit in flight commit; no new unit starts.
        Turning it on drains the backlog that built up meanwhile.
        """
        self.storage.set_state(STATE_ENABLED, '1' if enabled else '0')
        logger.info(f"Pipeline {'enabled' if enabled else 'disabled'}")
        if enabled:
            self.ingest.drain()

    def unavailable_reason(self) -> Optional[str]:
        """Why queries cannot be answered right now, or None if they can."""
        if self.storage.migrating:
            return "migrating"
        if not self.storage.ready:
            return "schema not ready"
        if not self.enabled:
            return "pipeline disabled"
        return None

    def start(self) -> None:
        self.suggestions.start()
        self.interval.start()

    def stop(self, now: Optional[int] = None) -> None:
        """Stop background threads and close the open session."""
        self.interval.stop()
        with self.grouping_lock:
            closed = self.grouper.flush(now)
        if closed:
            logger.info(f"Closed session {closed.id} on shutdown")
        self.suggestions.stop()
        self.suggestions.process_pending_events()


def build_context(config: ConfigManager, provider: Optional[VisionProvider] = None,
                  use_provider: bool = True) -> PipelineContext:
    """Open the store, migrate it and wire every component.

    Args:
        config: ConfigManager
        provider: Provider override (tests); built from the ai section otherwise
        use_provider: False to run without any AI backend

    Raises:
        MigrationError: If the schema cannot be brought up to date
    """
    cfg = config.config
    storage = MemoryStorage(cfg.db_path, max_retries=cfg.storage.max_retries)
    markdown = MarkdownWriter(cfg.memory_root)
    if provider is None and use_provider:
        provider = create_provider(cfg.ai)
    logger.info(f"Pipeline store at {cfg.db_path} (schema v{storage.schema_version()})")
    return PipelineContext(config, storage, markdown, provider)


class IngestTask:
    """Stores incoming analyses and groups the backlog in capture order."""

    def __init__(self, context: PipelineContext):
        self.context = context

    def ingest(self, item: Union[dict, ScreenshotAnalysis],
               now: Optional[int] = None) -> Tuple[ScreenshotAnalysis, List[GroupingResult]]:
        """Accept one analysis payload.

        The record is always stored, including malformed ones which are
        kept for audit. Grouping only runs while the pipeline is enabled;
        otherwise the record waits in the backlog.

        Raises:
            ValidationError: If the payload has no segment id
        """
        analysis = item if isinstance(item, ScreenshotAnalysis) else ScreenshotAnalysis.from_payload(item)
        if not analysis.is_valid:
            logger.warning(f"Malformed analysis {analysis.segment_id}: {analysis.validation_error}")
        self.context.storage.save_analysis(analysis)
        return analysis, self.drain(now)

    def ingest_segment(self, segment_id: str, captured_at: int, image_paths: List[str],
                       now: Optional[int] = None) -> Tuple[ScreenshotAnalysis, List[GroupingResult]]:
        """Run the vision analyzer on a captured segment, then ingest the result.

        Raises:
            PipelineUnavailableError: No AI provider is configured
            ProviderError: The provider failed on every attempt
        """
        analyzer = self.context.analyzer
        if analyzer is None:
            raise PipelineUnavailableError("No AI provider configured")
        last = self.context.storage.get_last_session()
        analysis = analyzer.analyze(segment_id, captured_at, image_paths,
                                    previous_summary=last.summary if last else None)
        return self.ingest(analysis, now)

    def drain(self, now: Optional[int] = None) -> List[GroupingResult]:
        context = self.context
        if not context.enabled or not context.storage.ready:
            return []
        with context.grouping_lock:
            return context.grouper.drain(now, should_stop=lambda: not context.enabled)


class IntervalTask:
    """Runs the periodic jobs every ``pipeline.tick_seconds``."""

    def __init__(self, context: PipelineContext):
        self.context = context
        self._running = False
        self._thread: Optional[threading.Thread] = None

    def start(self):
        if self._running:
            logger.warning("IntervalTask already running")
            return
        self._running = True
        self._thread = threading.Thread(target=self._run_loop, daemon=True)
        self._thread.start()
        logger.info("IntervalTask started")

    def stop(self):
        if not self._running:
            return
        self._running = False
        if self._thread:
            self._thread.join(timeout=10)
            self._thread = None
        logger.info("IntervalTask stopped")

    def _run_loop(self):
        while self._running:
            self.run_once()
            for _ in range(max(1, self.context.config.config.pipeline.tick_seconds)):
                if not self._running:
                    break
                time.sleep(1)

    def _job(self, name: str, fn) -> None:
        try:
            fn()
        except Exception as e:
            logger.error(f"Periodic job {name} failed: {e}", exc_info=True)

    def run_once(self, now: Optional[int] = None) -> None:
        """One maintenance pass. A failing job does not stop the others."""
        context = self.context
        if not context.enabled or not context.storage.ready:
            return
        now = int(time.time()) if now is None else now

        def flush_idle():
            with context.grouping_lock:
                context.grouper.flush(now, idle_only=True)

        self._job('grouping backlog', lambda: context.ingest.drain(now))
        self._job('idle flush', flush_idle)
        self._job('project backfill', lambda: context.projects.process_unlinked(now))
        self._job('suggestion tick', lambda: context.suggestions.queue_tick(now))
        self._job('habit detection', lambda: self._detect_habits_if_due(now))
        self._job('summaries', lambda: context.summaries.run_due(now))

    def _detect_habits_if_due(self, now: int) -> None:
        storage = self.context.storage
        interval = self.context.config.config.habits.interval_hours * 3600
        last_run = int(storage.get_state(STATE_LAST_HABIT_RUN, '0'))
        if now - last_run < interval:
            return
        self.context.habits.detect_all(now)
        storage.set_state(STATE_LAST_HABIT_RUN, str(now))
