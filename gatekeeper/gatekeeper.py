import hmac
import logging
import os
import time
import uuid

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import MethodNotAllowed as HTTPMethodNotAllowed
from werkzeug.exceptions import RequestEntityTooLarge

from gatekeeper.bindings import resolve_binding
from gatekeeper.config import GatewayConfig
from gatekeeper.errors import (
    ClientInputError,
    ErrorKind,
    GatewayError,
    MethodNotAllowed,
    PayloadTooLarge,
    PolicyViolation,
    Unauthorized,
    deepest_message,
)
from gatekeeper.policy import check_statement, parse_payload

_log = logging.getLogger("gatekeeper")

QUERY_ROUTES = ("/", "/query")
# everything is routed to the pipeline so method enforcement happens there
ROUTE_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def cors_headers(config: GatewayConfig, origin=None) -> dict:
    headers = {
        "Access-Control-Allow-Methods": config.allow_methods,
        "Access-Control-Allow-Headers": ", ".join(config.cors_allow_headers),
    }
    if "*" in config.cors_origins:
        headers["Access-Control-Allow-Origin"] = "*"
    elif origin and origin in config.cors_origins:
        headers["Access-Control-Allow-Origin"] = origin
        headers["Vary"] = "Origin"
    return headers


def preflight(req, config: GatewayConfig) -> Response:
    resp = Response(status=204)
    resp.headers["Access-Control-Max-Age"] = str(config.cors_max_age)
    is_cors = req.headers.get("Origin") is not None and \
        req.headers.get("Access-Control-Request-Method") is not None
    if not is_cors:
        resp.headers["Allow"] = config.allow_methods
    return resp


def error_response(exc: GatewayError, config: GatewayConfig) -> Response:
    if exc.kind is ErrorKind.EXECUTION_FAILURE:
        resp = jsonify({"error": "Database Error", "details": deepest_message(exc)})
    else:
        resp = jsonify({"error": exc.message})
    resp.status_code = exc.status
    if exc.kind is ErrorKind.METHOD_NOT_ALLOWED:
        resp.headers["Allow"] = config.allow_methods
    return resp


def unexpected_response(exc: BaseException) -> Response:
    resp = jsonify({"error": "Database Error", "details": deepest_message(exc)})
    resp.status_code = ErrorKind.UNEXPECTED_FAILURE.status
    return resp


def _authorized(req, api_key: str) -> bool:
    supplied = req.headers.get("X-API-Key", "")
    auth = req.headers.get("Authorization", "")
    if auth.lower().startswith("bearer "):
        supplied = auth[7:].strip()
    return hmac.compare_digest(supplied.encode(), api_key.encode())


def admit(req, config: GatewayConfig):
    """Run every check ahead of execution; returns (binding, payload)."""
    if req.method != config.execute_method:
        raise MethodNotAllowed(
            f"Method Not Allowed. This gateway only accepts {config.execute_method} requests."
        )

    if config.api_key and not _authorized(req, config.api_key):
        raise Unauthorized("unauthorized")

    if req.mimetype != "application/json":
        raise ClientInputError("Request must be application/json")

    if req.content_length is not None and req.content_length > config.max_body_bytes:
        raise PayloadTooLarge(f"Request body exceeds {config.max_body_bytes} bytes")
    try:
        data = req.get_json(silent=True)
    except RequestEntityTooLarge:
        raise PayloadTooLarge(f"Request body exceeds {config.max_body_bytes} bytes") from None
    if data is None:
        raise ClientInputError("Invalid request: body is not valid JSON.")

    payload = parse_payload(data)
    binding = resolve_binding(payload.target_binding, config)

    decision = check_statement(payload.statement, config)
    if not decision.allowed:
        raise PolicyViolation(decision.reason)
    return binding, payload


def handle_query(req, config: GatewayConfig, request_id: str) -> Response:
    if req.method == "OPTIONS":
        return preflight(req, config)

    started = time.perf_counter()
    try:
        binding, payload = admit(req, config)
        result = binding.execute(payload.statement, payload.parameters, config.statement_timeout)
        resp = jsonify(result.to_dict(binding.name))
    except GatewayError as e:
        elapsed = (time.perf_counter() - started) * 1000.0
        if e.kind is ErrorKind.EXECUTION_FAILURE:
            _log.error("[%s] execution failed: %s (%.1f ms)", request_id, deepest_message(e), elapsed)
        else:
            _log.info("[%s] rejected kind=%s status=%s: %s", request_id, e.kind.value, e.status, e.message)
        return error_response(e, config)
    except Exception as e:
        _log.exception("[%s] unexpected failure", request_id)
        return unexpected_response(e)

    elapsed = (time.perf_counter() - started) * 1000.0
    _log.info(
        "[%s] binding=%s rows=%d changes=%s sql=%.80s (%.1f ms)",
        request_id, binding.name, len(result.rows), result.changes, payload.statement, elapsed,
    )
    return resp


def create_app(config: GatewayConfig = None) -> Flask:
    config = config or GatewayConfig.from_env()

    app = Flask(__name__)
    app.config["GATEKEEPER"] = config
    app.config["MAX_CONTENT_LENGTH"] = config.max_body_bytes

    @app.get("/health")
    def health():
        return "ok"

    def query():
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        resp = handle_query(request, config, request_id)
        resp.headers.update(cors_headers(config, request.headers.get("Origin")))
        resp.headers["X-Request-Id"] = request_id
        return resp

    methods = list(ROUTE_METHODS)
    if config.execute_method not in methods:
        methods.append(config.execute_method)
    for rule in QUERY_ROUTES:
        app.add_url_rule(
            rule, endpoint="query", view_func=query,
            methods=methods, provide_automatic_options=False,
        )

    @app.errorhandler(HTTPMethodNotAllowed)
    def method_not_allowed(e):
        # verbs outside ROUTE_METHODS never reach the view
        if request.path not in QUERY_ROUTES:
            return e
        resp = error_response(
            MethodNotAllowed(
                f"Method Not Allowed. This gateway only accepts {config.execute_method} requests."
            ),
            config,
        )
        resp.headers.update(cors_headers(config, request.headers.get("Origin")))
        return resp

    return app


def main():
    logging.basicConfig(
        level=os.getenv("GATEKEEPER_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    config = GatewayConfig.from_env()
    app = create_app(config)
    _log.info(
        "gatekeeper on %s:%s bindings=%s default=%s",
        config.host, config.port, ",".join(config.bindings), config.default_binding,
    )
    app.run(host=config.host, port=config.port, threaded=True)


if __name__ == "__main__":
    main()
