"""
Flask Web Application for the Adaptive Assessment

JSON API over AssessmentManager. Every endpoint builds a command, hands it
to the manager and returns the result's to_dict() with the matching status.
"""

from flask import Flask, request, jsonify
import logging

from backend.commands import (
    FinalizeSession,
    GetSessionStatus,
    RouteNext,
    StartSession,
    SubmitAnswer,
)
from backend.config import AppConfig
from backend.core.assessment_manager import AssessmentManager
from backend.results import ErrorResult

logger = logging.getLogger(__name__)


def build_manager(config: AppConfig) -> AssessmentManager:
    """Build the manager, loading the text-generation model when one is configured"""
    client = None
    if config.llm_model:
        # Imported lazily: torch/transformers are only needed with a model
        from backend.utils.hf_client import HuggingFaceClient

        logger.info(f"Initializing HuggingFace model {config.llm_model} (this takes a while)...")
        client = HuggingFaceClient(model_name=config.llm_model, load_in_4bit=True)
        logger.info("Model loaded successfully")

    return AssessmentManager.from_config(config, client=client)


def _respond(result):
    """JSON body plus status code for any manager result"""
    if isinstance(result, ErrorResult):
        return jsonify(result.to_dict()), result.http_status
    return jsonify(result.to_dict()), 200


def _bad_request(message: str):
    error = ErrorResult(code="VALIDATION_ERROR", message=message, http_status=400)
    return _respond(error)


def _json_body():
    """Request body as a dict, or None when it is missing or not an object"""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None


def create_app(manager: AssessmentManager = None) -> Flask:
    """
    Application factory.

    Args:
        manager: Prebuilt manager (tests inject one); built from the
            environment when omitted
    """
    if manager is None:
        manager = build_manager(AppConfig.from_env())

    app = Flask(__name__)
    app.config['ASSESSMENT_MANAGER'] = manager

    @app.route('/api/start', methods=['POST'])
    def start_assessment():
        """Start new assessment session"""
        data = request.get_json(silent=True)
        if data is None:
            data = {}
        if not isinstance(data, dict):
            return _bad_request("Request body must be a JSON object")

        initial_context = data.get('initialContext') or {}
        if not isinstance(initial_context, dict):
            return _bad_request("initialContext must be an object")

        return _respond(manager.handle(StartSession(initial_context=initial_context)))

    @app.route('/api/route-next', methods=['POST'])
    def route_next():
        """Optionally record the last answer and route the next question"""
        data = _json_body()
        if data is None:
            return _bad_request("Request body must be a JSON object")

        command = RouteNext(
            session_id=data.get('sessionId'),
            last_answer=data.get('lastAnswer'),
        )
        return _respond(manager.handle(command))

    @app.route('/api/submit-answer', methods=['POST'])
    def submit_answer():
        """Record an answer (or a correction) and route the next question"""
        data = _json_body()
        if data is None:
            return _bad_request("Request body must be a JSON object")
        if 'value' not in data:
            return _bad_request("value is required")

        command = SubmitAnswer(
            session_id=data.get('sessionId'),
            question_id=data.get('questionId'),
            value=data['value'],
            correction=bool(data.get('correction', False)),
        )
        return _respond(manager.handle(command))

    @app.route('/api/session-status/<session_id>', methods=['GET'])
    def session_status(session_id):
        """Read-only session progress"""
        return _respond(manager.handle(GetSessionStatus(session_id=session_id)))

    @app.route('/api/finalize', methods=['POST'])
    def finalize_assessment():
        """Generate the diagnostic for a completed session"""
        data = _json_body()
        if data is None:
            return _bad_request("Request body must be a JSON object")

        return _respond(manager.handle(FinalizeSession(session_id=data.get('sessionId'))))

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            'success': False,
            'error': {'code': 'NOT_FOUND', 'message': 'Endpoint not found', 'details': {}}
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({
            'success': False,
            'error': {'code': 'VALIDATION_ERROR', 'message': 'Method not allowed', 'details': {}}
        }), 405

    return app


if __name__ == '__main__':
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    app = create_app()

    print("\n" + "="*60)
    print("ADAPTIVE ASSESSMENT - WEB API")
    print("="*60)
    print("\nServer starting...")
    print("API available at: http://localhost:5000/api/")
    print("\nPress Ctrl+C to stop the server")
    print("="*60 + "\n")

    app.run(debug=False, host='0.0.0.0', port=5000)
