import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Tuple

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from qr_decoder import (
    FETCH_TIMEOUT_SECONDS,
    FetchError,
    FetchFailure,
    ImageDecodeError,
    QRNotFoundError,
    ValidationError,
    decode_qr_from_url,
    validate_image_url,
)

API_NAME = "QR Code Decoder API"
API_VERSION = "1.0.0"

NO_QR_MESSAGE = "No QR code found in the provided image"
FETCH_FAILED_MESSAGE = "Failed to fetch image from the provided URL"
INTERNAL_ERROR_MESSAGE = "Internal server error while processing QR code"

# Unreachable hosts and timeouts are reported as client errors (400), not 502/504.
_CLIENT_FETCH_FAILURES = (FetchFailure.NETWORK_UNREACHABLE, FetchFailure.TIMEOUT)

logger = logging.getLogger(__name__)


def _env_seconds(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number of seconds, got {raw!r}") from None
    if value <= 0:
        raise RuntimeError(f"{name} must be greater than zero, got {raw!r}")
    return value


app = Flask(__name__)
app.config["FETCH_TIMEOUT_SECONDS"] = _env_seconds(
    "FETCH_TIMEOUT_SECONDS", FETCH_TIMEOUT_SECONDS
)


def _failure(message: str, status: int):
    return jsonify({"success": False, "error": message}), status


def _error_response(exc: Exception, image_url: Any):
    """
    Translate a pipeline failure into the JSON body and status code for the caller.
    Every failure ends up here, so each request gets exactly one response.
    """
    if isinstance(exc, ValidationError):
        return _failure(str(exc), 400)
    if isinstance(exc, QRNotFoundError):
        logger.info("No QR code found in image at %s", image_url)
        return _failure(NO_QR_MESSAGE, 404)
    if isinstance(exc, FetchError):
        logger.warning(
            "Error fetching image %s (%s): %s", image_url, exc.reason.value, exc
        )
        if exc.reason in _CLIENT_FETCH_FAILURES:
            return _failure(FETCH_FAILED_MESSAGE, 400)
        return _failure(INTERNAL_ERROR_MESSAGE, 500)
    if isinstance(exc, ImageDecodeError):
        logger.error("Error decoding image %s: %s", image_url, exc, exc_info=exc)
        return _failure(INTERNAL_ERROR_MESSAGE, 500)
    logger.error("Error decoding QR code from %s", image_url, exc_info=exc)
    return _failure(INTERNAL_ERROR_MESSAGE, 500)


def _utc_timestamp() -> str:
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@app.route("/api/decode-qr", methods=["POST"])
def decode_qr():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = {}

    raw_url = payload.get("imageUrl")
    try:
        image_url = validate_image_url(raw_url)
        decoded = decode_qr_from_url(
            image_url, timeout=app.config["FETCH_TIMEOUT_SECONDS"]
        )
    except Exception as exc:
        return _error_response(exc, raw_url)

    return jsonify({"success": True, "data": decoded, "imageUrl": raw_url}), 200


@app.route("/health", methods=["GET"])
def health_check():
    return jsonify({"status": "ok", "timestamp": _utc_timestamp()}), 200


@app.route("/", methods=["GET"])
def api_info():
    info: Dict[str, Any] = {
        "name": API_NAME,
        "version": API_VERSION,
        "endpoints": {
            "POST /api/decode-qr": "Decode QR code from image URL",
            "GET /health": "Health check",
            "GET /": "API information",
        },
        "usage": {
            "endpoint": "/api/decode-qr",
            "method": "POST",
            "body": {"imageUrl": "http://example.com/qrcode.png"},
        },
    }
    return jsonify(info), 200


@app.errorhandler(HTTPException)
def handle_http_exception(exc: HTTPException) -> Tuple[Any, int]:
    # Unknown routes and wrong methods still answer in JSON.
    return _failure(exc.description or exc.name, exc.code or 500)


@app.errorhandler(Exception)
def handle_unexpected_exception(exc: Exception):
    logger.exception("Unhandled error while serving %s", request.path)
    return _failure(INTERNAL_ERROR_MESSAGE, 500)


def main() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    port = int(os.getenv("PORT", "3000"))
    logger.info("%s is running on port %d", API_NAME, port)
    logger.info("Health check: http://localhost:%d/health", port)
    logger.info("API endpoint: http://localhost:%d/api/decode-qr", port)
    app.run(host="0.0.0.0", port=port, threaded=True)


if __name__ == "__main__":
    main()
