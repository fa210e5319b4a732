import logging
import math
import sys

from flask import Blueprint, Flask, current_app, jsonify, request
from waitress import serve
from werkzeug.exceptions import BadRequest

from .config import DEFAULT_STATIC_DIR, load_config
from .errors import ConfigError, MalformedRequest, MethodNotAllowed, RequestError, StoreUnavailable
from .service import CalculatorService
from .store import CalculatorStore, create_pool

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

api = Blueprint("api", __name__, url_prefix="/api")


def _service() -> CalculatorService:
    return current_app.extensions["calculator"]


def _parse_delta() -> float:
    # a JSON object, or null; a missing or null "a" counts as 0
    try:
        payload = request.get_json(force=True)
    except BadRequest:
        raise MalformedRequest() from None
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise MalformedRequest()
    a = payload.get("a")
    if a is None:
        a = 0
    if isinstance(a, bool) or not isinstance(a, (int, float)):
        raise MalformedRequest()
    try:
        delta = float(a)
    except OverflowError:
        raise MalformedRequest() from None
    if not math.isfinite(delta):
        raise MalformedRequest()
    return delta


@api.get("/hello")
def hello():
    return jsonify(message="Hello from Python on Render!")


@api.get("/result")
def result():
    return jsonify(value=_service().get_current())


# GET is routed here too, otherwise the root static route would answer it with 404
@api.route("/add", methods=["GET", "POST"])
def add():
    if request.method != "POST":
        raise MethodNotAllowed(["POST"])
    delta = _parse_delta()
    return jsonify(value=_service().add(delta))


def _error_response(exc: RequestError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.path, exc,
                     exc_info=exc.__cause__ or exc)
    response = jsonify(error=exc.message)
    if isinstance(exc, MethodNotAllowed) and exc.allowed:
        response.headers["Allow"] = ", ".join(exc.allowed)
    return response, exc.status_code


def _method_not_allowed(exc):
    return _error_response(MethodNotAllowed(exc.valid_methods or ()))


def create_app(service: CalculatorService, static_dir: str = DEFAULT_STATIC_DIR) -> Flask:
    app = Flask(__name__, static_folder=static_dir, static_url_path="")
    app.extensions["calculator"] = service
    app.register_blueprint(api)
    app.register_error_handler(RequestError, _error_response)
    app.register_error_handler(405, _method_not_allowed)

    @app.get("/")
    def index():
        return app.send_static_file("index.html")

    return app


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def main():
    try:
        config = load_config()
    except ConfigError as exc:
        configure_logging()
        logger.critical("%s", exc)
        sys.exit(1)

    configure_logging(config.log_level)

    pool = create_pool(config)
    store = CalculatorStore(pool)
    try:
        store.open(config.startup_timeout)
    except StoreUnavailable as exc:
        logger.critical("error initializing calculator table: %s", exc)
        store.close()
        sys.exit(1)

    app = create_app(CalculatorService(store), config.static_dir)

    logger.info("Server listening on port %s", config.port)
    try:
        serve(app, host=config.host, port=config.port, threads=config.threads)
    finally:
        store.close()


if __name__ == "__main__":
    main()
