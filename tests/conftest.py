import socket
import threading
from io import BytesIO
from typing import Callable, List, Optional

import pytest
import qrcode
import requests
from PIL import Image

import qr_decoder
from app import app as flask_app


class FakeResponse:
    """Minimal stand-in for a streamed ``requests.Response``."""

    def __init__(self, body: bytes = b"", status_code: int = 200, chunks: Optional[List[bytes]] = None):
        self.status_code = status_code
        self._chunks = chunks if chunks is not None else [body]

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error", response=self)

    def close(self) -> None:
        pass

    def iter_content(self, chunk_size: int = 1):
        yield from self._chunks


def make_qr_png(data: str, invert: bool = False) -> bytes:
    qr = qrcode.QRCode(box_size=10, border=4)
    qr.add_data(data)
    qr.make(fit=True)
    if invert:
        qr_image = qr.make_image(fill_color="white", back_color="black")
    else:
        qr_image = qr.make_image()
    buffer = BytesIO()
    qr_image.save(buffer, format="PNG")
    return buffer.getvalue()


def make_blank_png(size: int = 200) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", (size, size), color="white").save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def client():
    flask_app.config["TESTING"] = True
    with flask_app.test_client() as test_client:
        yield test_client


@pytest.fixture
def fake_get(monkeypatch) -> Callable:
    """
    Replace ``requests.get`` inside the decoder.
    Call the fixture with a FakeResponse or an exception; it returns the list of recorded calls.
    """
    calls = []

    def install(outcome):
        def _get(url, **kwargs):
            calls.append((url, kwargs))
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome

        monkeypatch.setattr(qr_decoder.requests, "get", _get)
        return calls

    return install


@pytest.fixture
def slow_image_server():
    """
    Start a local HTTP server that announces a body and then sends it one byte
    every ``interval`` seconds. Returns a factory taking the interval and
    giving back the image URL.
    """
    stop = threading.Event()
    listeners = []
    threads = []

    def start(interval: float, body_length: int = 20) -> str:
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        listener.settimeout(5)
        listeners.append(listener)

        def serve():
            try:
                conn, _ = listener.accept()
            except OSError:
                return
            with conn:
                conn.recv(65536)
                conn.sendall(
                    b"HTTP/1.1 200 OK\r\n"
                    b"Content-Type: image/png\r\n"
                    b"Content-Length: " + str(body_length).encode() + b"\r\n\r\n"
                )
                for _ in range(body_length):
                    if stop.wait(interval):
                        return
                    try:
                        conn.sendall(b"x")
                    except OSError:
                        return

        thread = threading.Thread(target=serve, daemon=True)
        thread.start()
        threads.append(thread)
        return f"http://127.0.0.1:{listener.getsockname()[1]}/slow.png"

    yield start

    stop.set()
    for listener in listeners:
        listener.close()
    for thread in threads:
        thread.join(timeout=5)
