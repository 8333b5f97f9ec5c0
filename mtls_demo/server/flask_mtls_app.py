from __future__ import annotations

import logging

from flask import Flask, Response, request
from werkzeug.routing import Rule

from mtls_demo.errors import AuthorizationError, InvariantViolation
from mtls_demo.server.session import AuthorizationState, SessionDescriptor

logger = logging.getLogger(__name__)

SESSION_ENVIRON_KEY = "mtls.session"

SUCCESS_BODY = "Hello, secure world with intermediate CA!"
UNAUTHORIZED_PREFIX = "Client certificate not authorized: "
SERVER_ERROR_BODY = "Server error"


def current_session() -> SessionDescriptor:
    """
    Descriptor of the TLS session the current request arrived on.

    The mTLS server attaches it to every request; its absence means a
    plain connection reached an app that only serves secure sessions.
    """
    session = request.environ.get(SESSION_ENVIRON_KEY)
    if not isinstance(session, SessionDescriptor):
        raise InvariantViolation("Invalid socket properties: request carries no TLS session")
    return session


def _text(body: str, status: int) -> Response:
    return Response(body, status=status, mimetype="text/plain")


def create_app(reject_unauthorized: bool = True) -> Flask:
    app = Flask(__name__)
    app.config["MTLS_REJECT_UNAUTHORIZED"] = reject_unauthorized

    @app.before_request
    def enforce_client_certificate():
        session = current_session()
        if session.state is AuthorizationState.UNAUTHORIZED:
            if app.config["MTLS_REJECT_UNAUTHORIZED"]:
                raise AuthorizationError(session.authorization_error)
            logger.warning("Serving unauthorized client (%s)", session.authorization_error)

    def index(path):
        return _text(SUCCESS_BODY, 200)

    # Rules without a method list match every method, TRACE and extension methods included
    app.view_functions["index"] = index
    app.url_map.add(Rule("/", defaults={"path": ""}, endpoint="index"))
    app.url_map.add(Rule("/<path:path>", endpoint="index"))

    @app.errorhandler(AuthorizationError)
    def unauthorized(exc):
        logger.error("Auth Error: %s", exc)
        return _text(f"{UNAUTHORIZED_PREFIX}{exc}", 401)

    @app.errorhandler(InvariantViolation)
    def invariant_violation(exc):
        logger.critical("%s", exc)
        return _text(SERVER_ERROR_BODY, 500)

    return app
