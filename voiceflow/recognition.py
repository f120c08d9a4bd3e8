"""Speech recognizer abstraction and event normalization.

Platform speech engines are external collaborators. A concrete engine
subclasses ``Recognizer`` and reports raw payloads through the ``emit``
callback it was constructed with. Payloads are plain dicts shaped like the
browser Web Speech API events::

    {"type": "start"}
    {"type": "result", "results": [{"transcript": "hey", "isFinal": False}]}
    {"type": "error", "error": "no-speech"}
    {"type": "end"}

``normalize_event`` turns them into ``RecognitionEvent`` values and rejects
anything malformed with ``ValueError``.
"""

from dataclasses import dataclass
from typing import Callable, Optional

EVENT_KINDS = ("start", "result", "error", "end")

# Errors that never change session state. "aborted" is what our own abort() produces.
BENIGN_ERRORS = frozenset({"no-speech", "aborted"})

ERROR_MESSAGES = {
    "no-speech": "No speech detected. Please try speaking again.",
    "audio-capture": "Microphone not available. Please check your microphone connection.",
    "not-allowed": "Microphone access denied. Please allow microphone access and try again.",
    "service-not-allowed": "Speech recognition service is not allowed. Please type your message instead.",
    "network": "Network error occurred. Please check your internet connection.",
    "language-not-supported": "Language not supported. Please type your message instead.",
    "unavailable": "Speech recognition is not available. Please type your message instead.",
}


class RecognitionUnavailableError(RuntimeError):
    """The platform offers no speech recognition."""


class RecognizerAlreadyStartedError(RuntimeError):
    """start() was called on a recognizer that is already running."""


def error_message(code: str) -> str:
    """User-facing message for a recognizer error code."""
    return ERROR_MESSAGES.get(code, f"Speech recognition error: {code}")


@dataclass(frozen=True)
class RecognitionEvent:
    kind: str
    transcript: str = ""
    error: Optional[str] = None
    is_final: bool = False


def normalize_event(raw) -> RecognitionEvent:
    """Validate a raw recognizer payload.

    Args:
        raw: A ``RecognitionEvent`` or a Web Speech style dict.

    Returns:
        The normalized event.

    Raises:
        ValueError: If the payload is not a recognizable event.
    """
    if isinstance(raw, RecognitionEvent):
        if raw.kind not in EVENT_KINDS:
            raise ValueError(f"Unknown recognition event kind: {raw.kind!r}")
        return raw
    if not isinstance(raw, dict):
        raise ValueError(f"Recognition payload must be a dict, got {type(raw).__name__}")

    kind = raw.get("type")
    if kind not in EVENT_KINDS:
        raise ValueError(f"Unknown recognition event type: {kind!r}")

    if kind == "result":
        results = raw.get("results")
        if not isinstance(results, list):
            raise ValueError("Result event without a results list")
        parts = []
        is_final = bool(results)
        for r in results:
            if isinstance(r, str):
                parts.append(r)
                continue
            if not isinstance(r, dict) or not isinstance(r.get("transcript"), str):
                raise ValueError(f"Malformed recognition result: {r!r}")
            parts.append(r["transcript"])
            is_final = is_final and bool(r.get("isFinal", False))
        return RecognitionEvent("result", transcript="".join(parts).strip(), is_final=is_final)

    if kind == "error":
        code = raw.get("error")
        if not isinstance(code, str) or not code:
            raise ValueError("Error event without an error code")
        return RecognitionEvent("error", error=code)

    return RecognitionEvent(kind)


class Recognizer:
    """Base class for a platform speech recognizer.

    Subclasses implement ``start``, ``stop`` and ``abort`` and call
    ``self.emit(payload)`` for every platform callback.
    """

    def __init__(self, continuous: bool, interim_results: bool,
                 emit: Callable[[dict], None], lang: str = "en-US"):
        self.continuous = continuous
        self.interim_results = interim_results
        self.lang = lang
        self.emit = emit

    def start(self):
        raise NotImplementedError

    def stop(self):
        raise NotImplementedError

    def abort(self):
        raise NotImplementedError


RecognizerFactory = Callable[[bool, bool, Callable[[dict], None]], Recognizer]
