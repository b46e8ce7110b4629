"""Newline-delimited JSON protocol for daemon IPC.

Every message on the wire is exactly one JSON object followed by a single
newline. One connection carries one request and one response.

Request format:
    {"type": "send", "text": str}
    {"type": "disconnect"}

Response format:
    {"status": "success", "output": str}   # send
    {"status": "success", "output": str, "connectionLost": true}  # daemon drains
    {"status": "success"}                  # disconnect
    {"status": "error", "error": str}
"""

import json
from typing import Any, Dict, Optional

MSG_SEND = "send"
MSG_DISCONNECT = "disconnect"

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"

DELIMITER = b"\n"


def encode_message(message: Dict[str, Any]) -> bytes:
    """
    Serialize a message to one newline-terminated line.

    json.dumps escapes embedded newlines, so the delimiter can only appear
    at the end.
    """
    return json.dumps(message).encode("utf-8") + DELIMITER


def decode_message(data: bytes) -> Dict[str, Any]:
    """
    Deserialize one line (trailing newline optional).

    Raises:
        ValueError: If data is not a JSON object (json.JSONDecodeError is a
            ValueError subclass)
    """
    message = json.loads(data.decode("utf-8").strip())
    if not isinstance(message, dict):
        raise ValueError(f"Expected a JSON object, got {type(message).__name__}")
    return message


def send_request(text: str) -> Dict[str, Any]:
    return {"type": MSG_SEND, "text": text}


def disconnect_request() -> Dict[str, Any]:
    return {"type": MSG_DISCONNECT}


def success_response(output: Optional[str] = None, connection_lost: bool = False) -> Dict[str, Any]:
    response: Dict[str, Any] = {"status": STATUS_SUCCESS}
    if output is not None:
        response["output"] = output
    if connection_lost:
        response["connectionLost"] = True
    return response


def error_response(error: str) -> Dict[str, Any]:
    return {"status": STATUS_ERROR, "error": error}
