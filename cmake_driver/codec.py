"""
Framing of the CMake server wire protocol.

Every message, in both directions, is a JSON document wrapped between a
start and an end marker:

    \\n[== "CMake Server" ==[\\n{...json...}\\n]== "CMake Server" ==]\\n

The server may split a frame over several reads or pack several frames in
one, so decoding accumulates bytes and only yields complete frames.
"""

import json
import logging
from typing import Any, Dict, List

from cmake_driver.exceptions import FrameDecodeError
from cmake_driver.metrics import get_metrics

logger = logging.getLogger(__name__)


class FrameCodec:
    """Encodes requests and decodes delimiter-bounded frames from a byte stream."""

    def __init__(self, cookie: str, server_name: str = "CMake Server"):
        self.cookie = cookie
        self.start_marker = f'\n[== "{server_name}" ==[\n'.encode("utf-8")
        self.end_marker = f'\n]== "{server_name}" ==]\n'.encode("utf-8")
        self.decode_errors = 0
        self._buffer = bytearray()
        self._metrics = get_metrics()

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet part of a complete frame."""
        return len(self._buffer)

    def reset(self) -> None:
        self._buffer.clear()

    def encode(self, message: Dict[str, Any]) -> bytes:
        """Wrap a request, adding the protocol version and session cookie."""
        payload = dict(message)
        payload["protocolVersion"] = {"major": 1}
        payload["cookie"] = self.cookie
        body = json.dumps(payload).encode("utf-8")
        return self.start_marker + body + self.end_marker

    def feed(self, data: bytes) -> List[Dict[str, Any]]:
        """
        Consume newly received bytes and return every complete message, in
        arrival order. Incomplete trailing data stays buffered.
        """
        self._buffer.extend(data)
        messages = []

        while True:
            start = self._buffer.find(self.start_marker)
            if start == -1:
                self._discard_garbage()
                break
            if start > 0:
                logger.debug(f"Discarding {start} bytes before frame start marker")
                del self._buffer[:start]

            body_start = len(self.start_marker)
            end = self._buffer.find(self.end_marker, body_start)
            if end == -1:
                break

            frame = bytes(self._buffer[body_start:end])
            del self._buffer[:end + len(self.end_marker)]

            try:
                messages.append(self._decode(frame))
            except FrameDecodeError as e:
                self.decode_errors += 1
                self._metrics.record_decode_error()
                logger.warning(str(e))
            else:
                self._metrics.record_frame()

        return messages

    def _decode(self, frame: bytes) -> Dict[str, Any]:
        try:
            message = json.loads(frame.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise FrameDecodeError(str(e), frame) from e
        if not isinstance(message, dict):
            raise FrameDecodeError("frame is not a JSON object", frame)
        return message

    def _discard_garbage(self) -> None:
        # Keep only a tail that could be the beginning of a split start marker.
        keep = len(self.start_marker) - 1
        if len(self._buffer) > keep:
            dropped = len(self._buffer) - keep
            logger.debug(f"Discarding {dropped} bytes outside of any frame")
            del self._buffer[:dropped]
