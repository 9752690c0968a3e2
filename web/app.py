#!/usr/bin/env python3
"""JSON API over the memory pipeline.

Build with ``create_app(context)``; the daemon serves it with ``--web``.
Every read goes through QueryFacade, so an unavailable pipeline answers
503 with the reason instead of partial data.

Status codes:
    400 bad input, 404 unknown id, 409 invalid suggestion transition,
    503 pipeline unavailable or database busy (``retryable: true``)
"""

import logging
import time

from flask import Flask, jsonify, request

from recall.errors import (
    InvalidTransitionError,
    NotFoundError,
    PipelineUnavailableError,
    ProviderError,
    TransientStoreError,
    ValidationError,
)
from recall.query import QueryFacade, QueryResult

logger = logging.getLogger(__name__)

# settings the running daemon only picks up after a restart
RESTART_KEYS = {
    'web': ['host', 'port'],
    'storage': ['data_dir', 'db_name', 'memory_dir'],
    'ai': ['provider', 'model', 'host', 'api_key'],
}


def _result(result: QueryResult):
    if not result.available:
        return jsonify({"error": "Pipeline unavailable", "reason": result.reason}), 503
    return jsonify(result.data)


def _public_config(config_manager) -> dict:
    data = config_manager.to_dict()
    if data.get('ai', {}).get('api_key'):
        data['ai']['api_key'] = '***'
    return data


def create_app(context) -> Flask:
    """Create the Flask app bound to one PipelineContext."""
    app = Flask(__name__)
    facade = QueryFacade(context)
    config_manager = context.config

    @app.errorhandler(ValidationError)
    def handle_validation(e):
        return jsonify({"error": str(e)}), 400

    @app.errorhandler(NotFoundError)
    def handle_not_found(e):
        return jsonify({"error": str(e)}), 404

    @app.errorhandler(InvalidTransitionError)
    def handle_transition(e):
        return jsonify({"error": str(e)}), 409

    @app.errorhandler(TransientStoreError)
    def handle_transient(e):
        return jsonify({"error": str(e), "retryable": True}), 503

    @app.errorhandler(PipelineUnavailableError)
    def handle_unavailable(e):
        return jsonify({"error": str(e), "reason": str(e)}), 503

    @app.errorhandler(ProviderError)
    def handle_provider(e):
        return jsonify({"error": f"AI provider failed: {e}", "retryable": True}), 502

    def _json_body() -> dict:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        return data

    @app.route('/api/analyses', methods=['POST'])
    def ingest_analysis():
        """Ingest one AI analysis payload.

        Returns:
            {"segment_id", "is_valid", "validation_error", "grouping": [...]}
        """
        analysis, results = context.ingest.ingest(_json_body())
        return jsonify({
            "segment_id": analysis.segment_id,
            "is_valid": analysis.is_valid,
            "validation_error": analysis.validation_error,
            "grouping": [r.to_dict() for r in results],
        }), 201

    @app.route('/api/activities/search')
    def search_activities():
        query = request.args.get('q', '')
        try:
            limit = int(request.args.get('limit', 20))
        except ValueError:
            return jsonify({"error": "limit must be an integer"}), 400
        return _result(facade.search_activities(query, limit))

    @app.route('/api/activities/<activity_id>')
    def activity_detail(activity_id):
        return _result(facade.get_activity_detail(activity_id))

    @app.route('/api/activities')
    def activities_in_range():
        """Sessions in a range.

        Query params: ``start`` and ``end`` (unix seconds or ISO), or
        ``range`` in natural language ("yesterday", "last week").
        """
        if 'range' in request.args:
            return _result(facade.get_activities_in_range(request.args['range']))
        start = request.args.get('start')
        end = request.args.get('end')
        if not start or not end:
            return jsonify({"error": "Provide 'range' or both 'start' and 'end'"}), 400
        return _result(facade.get_activities_in_range(start, end))

    @app.route('/api/suggestions')
    def pending_suggestions():
        return _result(facade.get_pending_suggestions())

    @app.route('/api/suggestions/<suggestion_id>/dismiss', methods=['POST'])
    def dismiss_suggestion(suggestion_id):
        return _result(facade.dismiss_suggestion(suggestion_id))

    @app.route('/api/suggestions/<suggestion_id>/respond', methods=['POST'])
    def respond_suggestion(suggestion_id):
        data = _json_body()
        if 'accepted' not in data:
            return jsonify({"error": "Missing required field: accepted"}), 400
        return _result(facade.respond_to_suggestion(suggestion_id, data['accepted']))

    @app.route('/api/summaries')
    def list_summaries():
        return _result(facade.get_summaries(
            request.args.get('type'), request.args.get('start'), request.args.get('end')
        ))

    @app.route('/api/summaries/generate', methods=['POST'])
    def generate_summary():
        """Body: {"type": "Daily|Weekly|Monthly", "date": "YYYY-MM-DD"}"""
        data = _json_body()
        if 'type' not in data:
            return jsonify({"error": "Missing required field: type"}), 400
        day = data.get('date') or time.strftime('%Y-%m-%d')
        return _result(facade.generate_summary(data['type'], day))

    @app.route('/api/pipeline', methods=['GET'])
    def pipeline_settings():
        return _result(facade.get_pipeline_settings())

    @app.route('/api/pipeline', methods=['PATCH'])
    def update_pipeline():
        """Body keys (all optional): enabled, capture_interval_seconds, segment_seconds."""
        data = _json_body()
        result = None
        if 'capture_interval_seconds' in data:
            result = facade.set_capture_interval(data['capture_interval_seconds'])
        if 'segment_seconds' in data:
            result = facade.set_segment_length(data['segment_seconds'])
        if 'enabled' in data:
            result = facade.set_pipeline_enabled(data['enabled'])
        if result is None:
            return jsonify({"error": "Nothing to update"}), 400
        return _result(result)

    @app.route('/api/config', methods=['GET'])
    def get_config():
        return jsonify(_public_config(config_manager))

    @app.route('/api/config', methods=['PATCH'])
    def update_config():
        """Update one value.

        Request body:
            {"section": "grouping", "key": "merge_threshold", "value": 0.6}

        Returns:
            {"success": bool, "requires_restart": bool, "config": {...}}
        """
        data = _json_body()
        if not all(k in data for k in ['section', 'key', 'value']):
            return jsonify({"error": "Missing required fields: section, key, value"}), 400

        section, key = data['section'], data['key']
        changed = config_manager.update(section, key, data['value'])
        return jsonify({
            "success": changed,
            "requires_restart": key in RESTART_KEYS.get(section, []),
            "config": _public_config(config_manager),
        })

    @app.route('/api/status', methods=['GET'])
    def status():
        storage = context.storage
        return jsonify({
            "available": context.unavailable_reason() is None,
            "reason": context.unavailable_reason(),
            "schema_version": storage.schema_version() if storage.ready else None,
            "open_session": bool(storage.get_open_session()) if storage.ready else False,
            "pending_suggestions": len(context.suggestions.get_pending()) if storage.ready else 0,
            "provider": context.provider.name if context.provider else None,
        })

    return app
