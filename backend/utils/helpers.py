"""
Utility helpers for the assessment backend

Session id generation, bounded calls to slow external services and
JSON extraction from model output.
"""

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError

from backend.errors import ExternalServiceError

logger = logging.getLogger(__name__)

# Shared by every text-generation call; bounds concurrent model calls
_EXECUTOR = ThreadPoolExecutor(max_workers=4, thread_name_prefix="textgen")


def generate_session_id(short=False):
    """
    Generate unique session identifier

    Args:
        short (bool): If True, return 8-char hex. If False, return full UUID hex.

    Returns:
        str: Session ID

    Examples:
        >>> generate_session_id()
        'a3f7e2b9c1d2e3f4a5b6c7d8e9f0a1b2'

        >>> generate_session_id(short=True)
        'a3f7e2b9'
    """
    full_id = uuid.uuid4().hex
    return full_id[:8] if short else full_id


def call_with_timeout(func, *args, timeout=10.0, **kwargs):
    """
    Run a blocking call with a deadline

    The call runs on a shared worker pool. On timeout the caller stops
    waiting; the worker finishes in the background and its result is dropped.

    Args:
        func: Callable to run
        timeout (float): Seconds to wait for the result

    Returns:
        Whatever func returns

    Raises:
        ExternalServiceError: If the call times out or raises
    """
    future = _EXECUTOR.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError:
        future.cancel()
        logger.warning(f"{getattr(func, '__name__', 'call')} timed out after {timeout}s")
        raise ExternalServiceError(
            f"Text generation timed out after {timeout}s",
            details={'timeoutSeconds': timeout},
        ) from None
    except ExternalServiceError:
        raise
    except Exception as e:
        logger.error(f"{getattr(func, '__name__', 'call')} failed: {e}")
        raise ExternalServiceError(f"Text generation failed: {e}") from e


def extract_json_object(text):
    """
    Trim markdown fences and anything outside the first balanced {...}

    Args:
        text (str): Raw model output

    Returns:
        str: Candidate JSON text (may still fail json.loads)
    """
    text = text.strip()
    for fence in ("```json", "```"):
        if text.startswith(fence):
            text = text[len(fence):]
            break
    if text.endswith("```"):
        text = text[:-3]
    text = text.strip()

    start = text.find('{')
    if start == -1:
        return text

    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == '\\':
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == '{':
            depth += 1
        elif char == '}':
            depth -= 1
            if depth == 0:
                return text[start:index + 1]
    return text[start:]
