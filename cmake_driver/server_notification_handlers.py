import json
import logging
from typing import Dict, Any, Callable


def message_handler(logger: logging.Logger) -> Callable[[Dict[str, Any]], None]:
    """
    Handles 'message' notifications.
    These are the configure output lines CMake prints (status messages, warnings).
    """
    def handler(message: Dict[str, Any]):
        text = message.get("message", "")
        title = message.get("title")
        if title:
            logger.info(f"{title}: {text}")
        else:
            logger.info(text)
    return handler


def progress_handler(logger: logging.Logger) -> Callable[[Dict[str, Any]], None]:
    """
    Handles 'progress' notifications.
    Sent during configure and compute, only useful while debugging.
    """
    def handler(message: Dict[str, Any]):
        if not logger.isEnabledFor(logging.DEBUG):
            return
        current = message.get("progressCurrent")
        maximum = message.get("progressMaximum")
        text = message.get("progressMessage", "")
        if current is not None and maximum:
            logger.debug(f"server progress - {text} ({current}/{maximum})")
        else:
            logger.debug("server progress")
    return handler


def file_change_handler(logger: logging.Logger) -> Callable[[Dict[str, Any]], None]:
    """
    Handles the 'fileChange' signal.
    CMake watches the CMakeLists.txt files; a change is always followed by a 'dirty' signal.
    """
    def handler(message: Dict[str, Any]):
        path = message.get("path", "")
        properties = message.get("properties", [])
        logger.debug(f"server signal - fileChange - {path} {properties}")
    return handler


def unhandled_signal_handler(logger: logging.Logger) -> Callable[[Dict[str, Any]], None]:
    """Logs signals the driver does not react to."""
    def handler(message: Dict[str, Any]):
        logger.debug(f"server signal - {json.dumps(message)}")
    return handler
