"""
Decoder for the forum's inline JSON-like payload.

The "lite" endpoints answer with a JavaScript assignment such as::

    window.script_muti_get_var_store={"data":{...}};

sometimes wrapped in an HTML page, sometimes encoded as GBK, and often with
JavaScript-only escapes (``\\xHH``, ``\\'``) that strict JSON rejects. The
decoder runs a fixed sequence of increasingly lenient stages and returns the
first one that yields a mapping or a list.
"""

import logging
import re
from typing import Any, Callable, List, Optional, Union

import orjson

from .errors import DecodeError
from .utils import decode_body, repair_legacy_encoding, strip_control_chars

logger = logging.getLogger(__name__)

ASSIGNMENT_PREFIX = "window.script_muti_get_var_store="

_LEGACY_MARKER = re.compile(r'encode"\s*:\s*"gbk"|charset=gbk', re.IGNORECASE)
_HEX_ESCAPE = re.compile(r"\\x([0-9a-fA-F]{2})")
_ASSIGNED_OBJECT = re.compile(r"=\s*({.*})\s*;?\s*$", re.DOTALL)
_ANY_OBJECT = re.compile(r"({.*})", re.DOTALL)


def normalize_js_escapes(text: str) -> str:
    """Rewrite ``\\xHH`` as ``\\u00hh`` and drop the backslash of ``\\'``."""
    text = _HEX_ESCAPE.sub(lambda m: "\\u00" + m.group(1).lower(), text)
    return text.replace("\\'", "'")


class PayloadDecoder:
    """Turn a raw response body into a generic JSON tree."""

    def decode(self, raw: Union[str, bytes]) -> Any:
        """
        Decode a body into a dict or list.

        Args:
            raw: Response body as text or bytes

        Returns:
            The decoded mapping or list

        Raises:
            DecodeError: when the body is empty or every stage fails
        """
        text = decode_body(raw)
        if not text.strip():
            raise DecodeError("Empty payload")

        text = self._extract_assignment(text)
        text = strip_control_chars(text)

        stages: List[Callable[[str], Optional[str]]] = [
            lambda body: body,
            self._legacy_encoding_stage,
            normalize_js_escapes,
            self._object_literal_stage,
        ]

        for index, stage in enumerate(stages):
            candidate = stage(text)
            if candidate is None:
                continue
            decoded = self._try_load(candidate)
            if decoded is not None:
                if index:
                    logger.debug("Payload decoded by fallback stage %d", index)
                return decoded

        raise DecodeError("Unable to decode payload")

    @staticmethod
    def _extract_assignment(text: str) -> str:
        start = text.find(ASSIGNMENT_PREFIX)
        if start >= 0:
            end = text.find("</script>", start)
            text = text[start:end] if end >= 0 else text[start:]

        text = text.strip()
        if text.startswith(ASSIGNMENT_PREFIX):
            text = text[len(ASSIGNMENT_PREFIX):]
        return text.rstrip(";\n\r\t ")

    @staticmethod
    def _legacy_encoding_stage(text: str) -> Optional[str]:
        if not _LEGACY_MARKER.search(text):
            return None
        repaired = repair_legacy_encoding(text)
        return repaired if repaired != text else None

    @staticmethod
    def _object_literal_stage(text: str) -> Optional[str]:
        match = _ASSIGNED_OBJECT.search(text) or _ANY_OBJECT.search(text)
        if match is None:
            return None
        return normalize_js_escapes(match.group(1))

    @staticmethod
    def _try_load(candidate: str) -> Any:
        try:
            decoded = orjson.loads(candidate)
        except orjson.JSONDecodeError:
            return None
        if isinstance(decoded, (dict, list)):
            return decoded
        return None
