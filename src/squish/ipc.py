"""Local request/response channel between the CLI client and a running engine.

Requests travel on the listener at ``<workdir>/ipc/<IPC_REQUEST_SOCKET>``.
For an optimisation request the client opens its own listener for the
responses; the server connects to it and sends one record per completed item.
Records are JSON objects tagged with a ``kind`` field.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field
from multiprocessing import AuthenticationError
from multiprocessing.connection import Client, Connection, Listener
from pathlib import Path
from typing import Any, Union

from .config import DEFAULT_SETTINGS, EngineSettings
from .engine import Engine, OptimiseOptions, RequestHandle
from .errors import InvalidRequest, SquishError, human_summary

__all__ = [
    "IPCClient",
    "IPCServer",
    "OptimisationRequest",
    "OptimisationResponse",
    "OptimisationResponseError",
    "StopOptimisationRequest",
    "decode_message",
    "encode_message",
]

logger = logging.getLogger(__name__)

FAMILY = "AF_UNIX"


@dataclass
class OptimisationRequest:
    urls: list[str]
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    size: tuple[int, int] | None = None
    downscale_factor: float | None = None
    speed_up_factor: float | None = None
    remove_audio: bool = False
    hide_floating_result: bool = False
    copy_to_clipboard: bool = False
    aggressive_optimisation: bool | None = None
    output: str | None = None
    source: str = "cli"

    kind = "optimise"


@dataclass
class StopOptimisationRequest:
    ids: list[str]
    remove: bool = False

    kind = "stop"


@dataclass
class OptimisationResponse:
    path: str
    for_url: str
    old_bytes: int = 0
    new_bytes: int = 0
    old_size: tuple[int, int] | None = None
    new_size: tuple[int, int] | None = None
    converted_from: str | None = None
    copy_to_clipboard: bool = False

    kind = "response"


@dataclass
class OptimisationResponseError:
    error: str
    for_url: str

    kind = "error"


Record = Union[OptimisationRequest, StopOptimisationRequest, OptimisationResponse, OptimisationResponseError]
_RECORDS: dict[str, type] = {
    cls.kind: cls
    for cls in (OptimisationRequest, StopOptimisationRequest, OptimisationResponse, OptimisationResponseError)
}
_SIZE_FIELDS = ("size", "old_size", "new_size")


def encode_message(record: Record) -> bytes:
    return json.dumps({"kind": record.kind, **asdict(record)}).encode("utf-8")


def decode_message(payload: bytes) -> Record:
    """Parse one JSON record; malformed payloads raise *InvalidRequest*."""
    try:
        data: dict[str, Any] = json.loads(payload.decode("utf-8"))
        cls = _RECORDS[data.pop("kind")]
        for key in _SIZE_FIELDS:
            if data.get(key) is not None:
                data[key] = tuple(data[key])
        return cls(**data)
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        raise InvalidRequest(f"Malformed message: {e}") from e


def request_socket(settings: EngineSettings) -> Path:
    return settings.sockets_dir / settings.IPC_REQUEST_SOCKET


def response_socket(settings: EngineSettings, request_id: str) -> Path:
    name = Path(settings.IPC_RESPONSE_SOCKET)
    return settings.sockets_dir / f"{name.stem}-{request_id}{name.suffix}"


class IPCServer:
    """Serve optimisation requests for an :class:`~squish.engine.Engine`."""

    def __init__(self, engine: Engine, settings: EngineSettings | None = None) -> None:
        self.engine = engine
        self.settings = settings or engine.settings
        self.address = request_socket(self.settings)
        self._listener: Listener | None = None
        self._thread: threading.Thread | None = None
        self._closed = threading.Event()

    def start(self) -> IPCServer:
        self.address.parent.mkdir(parents=True, exist_ok=True)
        self.address.unlink(missing_ok=True)
        self._listener = Listener(str(self.address), family=FAMILY, authkey=self.settings.IPC_AUTHKEY)
        self._thread = threading.Thread(target=self._accept_loop, name="squish-ipc", daemon=True)
        self._thread.start()
        logger.info("📡 Listening for requests on %s", self.address)
        return self

    def serve_forever(self) -> None:
        if self._thread is None:
            self.start()
        self._closed.wait()

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        if self._thread is not None and self._thread.is_alive():
            # accept() is not interrupted by close() on every platform
            try:
                Client(str(self.address), family=FAMILY, authkey=self.settings.IPC_AUTHKEY).close()
            except (OSError, AuthenticationError):
                pass
            self._thread.join(timeout=2)
        if self._listener is not None:
            self._listener.close()
            self._listener = None
        self.address.unlink(missing_ok=True)

    def __enter__(self) -> IPCServer:
        return self.start()

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _accept_loop(self) -> None:
        while not self._closed.is_set():
            listener = self._listener
            if listener is None:
                return
            try:
                conn = listener.accept()
            except OSError:
                if self._closed.is_set():
                    return
                logger.exception("IPC accept failed")
                continue
            except (AuthenticationError, EOFError) as e:
                logger.warning("Rejected IPC connection: %s", e)
                continue
            if self._closed.is_set():
                conn.close()
                return
            threading.Thread(target=self._serve, args=(conn,), daemon=True).start()

    def _serve(self, conn: Connection) -> None:
        with conn:
            try:
                message = decode_message(conn.recv_bytes())
            except (EOFError, OSError):
                return
            except InvalidRequest as e:
                logger.warning("⚠️ %s", e)
                conn.send_bytes(json.dumps({"kind": "nack", "error": str(e)}).encode())
                return

            match message:
                case StopOptimisationRequest(ids=ids, remove=remove):
                    for id in ids:
                        self.engine.request_stop(id, remove=remove)
                    conn.send_bytes(json.dumps({"kind": "ack"}).encode())
                case OptimisationRequest():
                    conn.send_bytes(json.dumps({"kind": "ack"}).encode())
                    self._optimise(message)
                case _:
                    conn.send_bytes(json.dumps({"kind": "nack", "error": f"Unexpected {message.kind}"}).encode())

    def _submit(self, request: OptimisationRequest, url: str) -> RequestHandle:
        options = OptimiseOptions(
            aggressive=request.aggressive_optimisation,
            copy_to_clipboard=request.copy_to_clipboard,
            output_path_template=request.output,
            hidden=request.hide_floating_result,
            source=request.source,
        )
        if request.size is not None:
            return self.engine.request_crop(url, request.size, options)
        if request.downscale_factor is not None:
            return self.engine.request_downscale(url, request.downscale_factor, options=options)
        if request.speed_up_factor is not None:
            return self.engine.request_speed_up(url, request.speed_up_factor, options)
        if request.remove_audio:
            return self.engine.request_remove_audio(url, options)
        return self.engine.request_optimise(url, options=options)

    def _optimise(self, request: OptimisationRequest) -> None:
        handles: list[tuple[str, RequestHandle | SquishError]] = []
        for url in request.urls:
            try:
                handles.append((url, self._submit(request, url)))
            except (SquishError, ValueError) as e:
                handles.append((url, InvalidRequest(str(e)) if isinstance(e, ValueError) else e))

        address = response_socket(self.settings, request.id)
        try:
            out = Client(str(address), family=FAMILY, authkey=self.settings.IPC_AUTHKEY)
        except OSError as e:
            logger.warning("⚠️ No response listener at %s: %s", address, e)
            out = None

        try:
            for url, handle in handles:
                response = self._response_for(url, handle)
                if out is not None:
                    out.send_bytes(encode_message(response))
        finally:
            if out is not None:
                out.close()

    def _response_for(self, url: str, handle: RequestHandle | SquishError) -> Record:
        if isinstance(handle, SquishError):
            return OptimisationResponseError(error=human_summary(handle), for_url=url)
        snapshot = handle.wait()
        if snapshot is None:
            return OptimisationResponseError(error="Stopped", for_url=url)
        if snapshot.error is not None:
            return OptimisationResponseError(error=snapshot.error, for_url=url)
        if snapshot.new_bytes < 0 and snapshot.notice is None:
            return OptimisationResponseError(error="Stopped", for_url=url)
        path = snapshot.result_path or snapshot.source_path
        return OptimisationResponse(
            path=str(path),
            for_url=snapshot.url or url,
            old_bytes=snapshot.old_bytes,
            new_bytes=snapshot.new_bytes,
            old_size=snapshot.old_size,
            new_size=snapshot.new_size,
            converted_from=str(snapshot.converted_from_path) if snapshot.converted_from_path else None,
            copy_to_clipboard=snapshot.copy_to_clipboard,
        )


class IPCClient:
    """Talk to an :class:`IPCServer` from another process."""

    def __init__(self, settings: EngineSettings | None = None, timeout: float | None = None) -> None:
        self.settings = settings or DEFAULT_SETTINGS
        self.timeout = timeout

    def _connect(self) -> Connection:
        return Client(str(request_socket(self.settings)), family=FAMILY, authkey=self.settings.IPC_AUTHKEY)

    def is_running(self) -> bool:
        if not request_socket(self.settings).exists():
            return False
        try:
            self._connect().close()
        except OSError:
            return False
        return True

    def _ack(self, conn: Connection) -> None:
        reply = json.loads(conn.recv_bytes().decode("utf-8"))
        if reply.get("kind") != "ack":
            raise InvalidRequest(reply.get("error", "Request rejected"))

    def stop(self, ids: list[str], remove: bool = False) -> None:
        with self._connect() as conn:
            conn.send_bytes(encode_message(StopOptimisationRequest(ids=list(ids), remove=remove)))
            self._ack(conn)

    def _accept(self, listener: Listener, address: Path, request_id: str) -> Connection:
        """Wait for the server to connect back, for at most ``timeout`` seconds."""
        if self.timeout is None:
            return listener.accept()
        accepted: list[Connection] = []
        errors: list[BaseException] = []

        def _wait() -> None:
            try:
                accepted.append(listener.accept())
            except (OSError, EOFError, AuthenticationError) as e:
                errors.append(e)

        thread = threading.Thread(target=_wait, name="squish-ipc-accept", daemon=True)
        thread.start()
        thread.join(self.timeout)
        if thread.is_alive():
            # accept() is not interrupted by close() on every platform
            try:
                Client(str(address), family=FAMILY, authkey=self.settings.IPC_AUTHKEY).close()
            except (OSError, AuthenticationError):
                pass
            thread.join(timeout=2)
            for conn in accepted:
                conn.close()
            raise TimeoutError(f"No response for request {request_id}")
        if errors:
            raise errors[0]
        return accepted[0]

    def optimise(self, request: OptimisationRequest) -> list[OptimisationResponse | OptimisationResponseError]:
        """Send *request* and collect one response per URL."""
        address = response_socket(self.settings, request.id)
        address.parent.mkdir(parents=True, exist_ok=True)
        address.unlink(missing_ok=True)
        responses: list[OptimisationResponse | OptimisationResponseError] = []

        try:
            with Listener(str(address), family=FAMILY, authkey=self.settings.IPC_AUTHKEY) as listener:
                with self._connect() as conn:
                    conn.send_bytes(encode_message(request))
                    self._ack(conn)
                with self._accept(listener, address, request.id) as incoming:
                    while len(responses) < len(request.urls):
                        if self.timeout is not None and not incoming.poll(self.timeout):
                            raise TimeoutError(f"No response for request {request.id}")
                        try:
                            record = decode_message(incoming.recv_bytes())
                        except EOFError:
                            break
                        if isinstance(record, (OptimisationResponse, OptimisationResponseError)):
                            responses.append(record)
        finally:
            address.unlink(missing_ok=True)
        return responses
