"""
Error Handlers - JSON bodies for every API error
"""
import logging
import traceback

from flask import Blueprint, jsonify
from werkzeug.exceptions import HTTPException

from app import db

logger = logging.getLogger(__name__)

errors_bp = Blueprint('errors', __name__)


@errors_bp.app_errorhandler(400)
def bad_request_error(error):
    return jsonify({'error': 'bad_request'}), 400


@errors_bp.app_errorhandler(401)
def unauthorized_error(error):
    return jsonify({'error': 'authentication_required'}), 401


@errors_bp.app_errorhandler(403)
def forbidden_error(error):
    """Handle 403 errors"""
    return jsonify({'error': 'forbidden'}), 403


@errors_bp.app_errorhandler(404)
def not_found_error(error):
    """Handle 404 errors"""
    return jsonify({'error': 'not_found'}), 404


@errors_bp.app_errorhandler(405)
def method_not_allowed_error(error):
    return jsonify({'error': 'method_not_allowed'}), 405


@errors_bp.app_errorhandler(500)
def internal_error(error):
    """Handle 500 errors"""
    db.session.rollback()

    error_details = f"{type(error).__name__}: {str(error)}\n{traceback.format_exc()}"
    logger.error(f"500 Error: {error_details}")

    return jsonify({'error': 'internal_server_error'}), 500


@errors_bp.app_errorhandler(Exception)
def unhandled_exception(error):
    if isinstance(error, HTTPException):
        return jsonify({'error': error.name}), error.code
    return internal_error(error)
