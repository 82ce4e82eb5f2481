import logging
import re
import socket
import threading
from enum import Enum
from io import BytesIO
from time import monotonic
from typing import NamedTuple, Optional
from urllib.parse import urlsplit

import cv2
import numpy as np
import requests
from PIL import Image
from urllib3.exceptions import ReadTimeoutError

logger = logging.getLogger(__name__)

FETCH_TIMEOUT_SECONDS = 10.0
USER_AGENT = "QR-Code-Decoder/1.0"
ALLOWED_SCHEMES = ("http", "https")

_CHUNK_SIZE = 64 * 1024
_SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*$")


class PixelGrid(NamedTuple):
    width: int
    height: int
    pixels: bytes  # RGBA, row-major


class FetchFailure(Enum):
    NETWORK_UNREACHABLE = "network_unreachable"
    TIMEOUT = "timeout"
    OTHER = "other"


class DecodeError(Exception):
    """Base class for every classified failure of the decode pipeline."""

    kind = "unclassified"


class ValidationError(DecodeError):
    kind = "validation"


class QRNotFoundError(DecodeError):
    kind = "not_found"


class ImageDecodeError(DecodeError):
    kind = "image_decode"


class FetchError(DecodeError):
    kind = "fetch"

    def __init__(self, message: str, reason: FetchFailure):
        super().__init__(message)
        self.reason = reason


def validate_image_url(value: object) -> str:
    """
    Check that a request value is an absolute http(s) URL.
    Returns the URL with surrounding whitespace removed, ready to fetch.
    Raises ValidationError with the message the endpoint reports to the caller.
    """
    if not value:
        raise ValidationError("imageUrl is required in request body")
    if not isinstance(value, str) or not _is_absolute_url(value.strip()):
        raise ValidationError("Invalid URL format")
    url = value.strip()
    if urlsplit(url).scheme.lower() not in ALLOWED_SCHEMES:
        raise ValidationError("URL must use HTTP or HTTPS protocol")
    return url


def _is_absolute_url(value: str) -> bool:
    try:
        parts = urlsplit(value)
        if not parts.scheme or not _SCHEME_RE.match(parts.scheme):
            return False
        if any(ch.isspace() for ch in parts.netloc):
            return False
        if parts.scheme.lower() in ALLOWED_SCHEMES:
            _ = parts.port  # ValueError for out-of-range or non-numeric ports
            return bool(parts.hostname)
    except ValueError:
        return False
    # Non-web schemes (mailto:, urn:, ftp://...) only need something after the colon.
    return bool(value[len(parts.scheme) + 1:])


def _is_read_timeout(exc: Exception) -> bool:
    # requests re-raises body read timeouts as ConnectionError(ReadTimeoutError).
    return isinstance(exc, requests.ConnectionError) and any(
        isinstance(arg, ReadTimeoutError) for arg in exc.args
    )


def _abort_connection(response: requests.Response) -> None:
    # Shutting the socket down wakes a reader blocked in recv(); close() alone
    # waits on the buffered reader's lock until the pending read finishes.
    connection = getattr(getattr(response, "raw", None), "connection", None)
    sock = getattr(connection, "sock", None)
    if sock is None:
        response.close()
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        # Already closed by the peer or by the reader.
        pass


def _read_body(response: requests.Response, url: str, remaining: float) -> bytes:
    """
    Read the whole streamed body of ``response``.

    A watchdog aborts the connection once ``remaining`` seconds have passed, so
    a server trickling bytes just inside the read timeout cannot hold the
    request open past the deadline.
    """
    expired = threading.Event()

    def _expire():
        expired.set()
        _abort_connection(response)

    watchdog = threading.Timer(max(remaining, 0.0), _expire)
    watchdog.daemon = True
    watchdog.start()
    buffer = BytesIO()
    try:
        for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
            if expired.is_set():
                break
            buffer.write(chunk)
    except Exception as exc:
        if expired.is_set() or _is_read_timeout(exc):
            raise FetchError(
                f"Timed out fetching {url}", FetchFailure.TIMEOUT
            ) from exc
        raise
    finally:
        watchdog.cancel()

    if expired.is_set():
        raise FetchError(f"Timed out fetching {url}", FetchFailure.TIMEOUT)
    return buffer.getvalue()


def fetch_image(url: str, timeout: float = FETCH_TIMEOUT_SECONDS) -> bytes:
    """
    Download the image at ``url`` in a single attempt.

    ``timeout`` bounds connecting, every socket read, and the body download
    as a whole. The body is returned as-is; format sniffing is left to Pillow.
    """
    logger.debug("Fetching image from %s", url)
    deadline = monotonic() + timeout
    try:
        with requests.get(
            url,
            headers={"User-Agent": USER_AGENT},
            timeout=timeout,
            stream=True,
        ) as response:
            response.raise_for_status()
            return _read_body(response, url, deadline - monotonic())
    except requests.Timeout as exc:
        # ConnectTimeout is also a ConnectionError, so this check comes first.
        raise FetchError(f"Timed out fetching {url}: {exc}", FetchFailure.TIMEOUT) from exc
    except requests.ConnectionError as exc:
        raise FetchError(
            f"Could not reach {url}: {exc}", FetchFailure.NETWORK_UNREACHABLE
        ) from exc
    except requests.RequestException as exc:
        raise FetchError(f"Failed to fetch {url}: {exc}", FetchFailure.OTHER) from exc


def decode_image(raw: bytes) -> PixelGrid:
    """Decode raw image bytes into an RGBA pixel grid."""
    try:
        with Image.open(BytesIO(raw)) as image:
            rgba = image.convert("RGBA")
    except (Image.DecompressionBombError, OSError, ValueError) as exc:
        # UnidentifiedImageError is an OSError subclass.
        raise ImageDecodeError(f"Could not decode image: {exc}") from exc
    return PixelGrid(rgba.width, rgba.height, rgba.tobytes())


def locate_qr(grid: PixelGrid) -> Optional[str]:
    """
    Find and decode a QR symbol in ``grid``.
    Returns the decoded text, or None when no symbol could be decoded.
    """
    rgba = np.frombuffer(grid.pixels, dtype=np.uint8).reshape(grid.height, grid.width, 4)
    gray = cv2.cvtColor(rgba, cv2.COLOR_RGBA2GRAY)
    detector = cv2.QRCodeDetector()

    # Retry inverted for light-on-dark symbols.
    for candidate in (gray, cv2.bitwise_not(gray)):
        text, _points, _ = detector.detectAndDecode(candidate)
        if text:
            return text
    return None


def decode_qr_from_url(image_url: str, timeout: float = FETCH_TIMEOUT_SECONDS) -> str:
    """
    Fetch ``image_url`` and return the text of the QR code it contains.

    Raises FetchError, ImageDecodeError or QRNotFoundError for the classified
    failures; anything else propagates unchanged.
    """
    raw = fetch_image(image_url, timeout=timeout)
    grid = decode_image(raw)
    text = locate_qr(grid)
    if text is None:
        raise QRNotFoundError("No QR code found in the image")
    return text
