"""
Project extraction from closed sessions.

Usage:
    pytest tests/test_projects.py -v
"""

from recall.projects import ProjectDetector, normalize_name

from conftest import BASE_TS


def _close(context):
    return context.grouper.flush(now=BASE_TS + 5000)


class TestNormalization:
    def test_variants_collapse(self):
        assert normalize_name("My_Project") == "my-project"
        assert normalize_name("my project") == "my-project"
        assert normalize_name("  My--project ") == "my-project"


class TestDetector:
    def test_path_beats_branch(self):
        context = ProjectDetector().detect([
            "zsh (recall/login)",
            "~/recall-core - Visual Studio Code",
        ])
        assert context.name == "recall-core"
        assert context.source == "path"

    def test_repository_url(self):
        context = ProjectDetector().detect(["https://github.com/acme/widget-api.git"])
        assert context.name == "widget-api"
        assert context.confidence == 0.8

    def test_generic_directory_ignored(self):
        assert ProjectDetector().detect(["/home/me/projects/src"]) is None


class TestExtraction:
    def test_reported_name_creates_project(self, context, ingest):
        ingest(BASE_TS, project_name='Recall Engine', technologies=['Python', 'SQLite'])
        session = _close(context)

        projects = context.storage.list_projects()
        assert len(projects) == 1
        project = projects[0]
        assert project.name == 'Recall Engine'
        assert project.normalized_name == 'recall-engine'
        assert project.session_ids == [session.id]
        assert project.technologies == ['Python', 'SQLite']
        assert context.markdown.read(project.markdown_path).startswith('---')

    def test_name_variants_resolve_to_one_project(self, context, ingest):
        ingest(BASE_TS, project_name='Recall_Engine', technologies=['Python'])
        first = _close(context)
        ingest(BASE_TS + 3600, project_name='recall engine', technologies=['Flask'])
        second = context.grouper.flush(now=BASE_TS + 9000)

        projects = context.storage.list_projects()
        assert len(projects) == 1
        project = projects[0]
        assert sorted(project.session_ids) == sorted([first.id, second.id])
        assert project.technologies == ['Python', 'Flask']
        assert project.first_seen == BASE_TS
        assert project.last_seen == BASE_TS + 3600

    def test_url_heuristic_when_no_name(self, context, ingest):
        ingest(BASE_TS, application='Firefox', activity_category='learning',
               url='https://github.com/acme/widget-api/pull/3', technologies=[],
               window_title='Pull request #3', file_names=[])
        _close(context)
        assert [p.name for p in context.storage.list_projects()] == ['widget-api']

    def test_low_confidence_ignored(self, context, ingest):
        context.config.update('projects', 'min_confidence', 0.9)
        ingest(BASE_TS, application='Firefox', url='https://github.com/acme/widget-api',
               technologies=[], window_title='widget-api', file_names=[])
        _close(context)
        assert context.storage.list_projects() == []

    def test_no_project_for_chat(self, context, ingest):
        ingest(BASE_TS, application='Slack', activity_category='communication',
               technologies=[], context_tags=['chat'], window_title='#general',
               file_names=[])
        _close(context)
        assert context.storage.list_projects() == []

    def test_backfill_links_unlinked_sessions(self, context, ingest):
        context.grouper._listeners.clear()
        ingest(BASE_TS, project_name='Backfilled')
        _close(context)
        assert context.storage.list_projects() == []

        assert context.projects.process_unlinked() == 1
        assert [p.name for p in context.storage.list_projects()] == ['Backfilled']

    def test_names_that_slugify_alike_stay_separate(self, context, ingest):
        ingest(BASE_TS, project_name='my.project', technologies=['Rust'])
        _close(context)
        ingest(BASE_TS + 3600, project_name='my project', technologies=['Go'])
        context.grouper.flush(now=BASE_TS + 9000)

        projects = {p.normalized_name: p for p in context.storage.list_projects()}
        assert sorted(projects) == ['my-project', 'my.project']
        assert projects['my.project'].technologies == ['Rust']
        assert projects['my-project'].technologies == ['Go']
        assert projects['my.project'].id != projects['my-project'].id
        assert projects['my.project'].markdown_path != projects['my-project'].markdown_path


class TestBackfill:
    @staticmethod
    def _chat(ingest, captured_at):
        ingest(captured_at, application='Slack', activity_category='communication',
               technologies=[], context_tags=['chat'], window_title='#general', file_names=[])

    def test_closed_sessions_scanned_once(self, context, ingest, monkeypatch):
        context.grouper._listeners.clear()
        self._chat(ingest, BASE_TS)
        _close(context)

        scanned = []
        extract = context.projects.extract
        monkeypatch.setattr(context.projects, 'extract',
                            lambda session: scanned.append(session.id) or extract(session))

        assert context.projects.process_unlinked(BASE_TS + 6000) == 0
        assert context.projects.process_unlinked(BASE_TS + 7000) == 0
        assert len(scanned) == 1

        ingest(BASE_TS + 8000, project_name='Later')
        context.grouper.flush(now=BASE_TS + 9000)
        assert context.projects.process_unlinked(BASE_TS + 9500) == 1
        assert len(scanned) == 2

    def test_failed_session_retried(self, context, ingest, monkeypatch):
        context.grouper._listeners.clear()
        ingest(BASE_TS, project_name='Flaky')
        _close(context)

        def broken(session):
            raise RuntimeError("extraction exploded")
        monkeypatch.setattr(context.projects, 'extract', broken)
        assert context.projects.process_unlinked(BASE_TS + 6000) == 0

        monkeypatch.undo()
        assert context.projects.process_unlinked(BASE_TS + 7000) == 1
        assert [p.name for p in context.storage.list_projects()] == ['Flaky']
