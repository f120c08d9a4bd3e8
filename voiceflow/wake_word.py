"""Wake word detection over streaming recognizer transcripts."""

import logging

logger = logging.getLogger(__name__)

DEFAULT_WAKE_WORD = "hey assistant"


class WakeWordDetector:
    """Case-insensitive substring match against one configured phrase.

    Interim recognizer results repeat the same text many times, so each
    distinct matching transcript fires only once until the next reset.
    ``last_result`` is the most recent transcript that fired.
    """

    def __init__(self, phrase: str = DEFAULT_WAKE_WORD):
        self.phrase = self._normalize(phrase)
        self.last_result: str | None = None
        self._fired: set[str] = set()

    @staticmethod
    def _normalize(phrase: str) -> str:
        return (phrase or "").strip().lower()

    def set_phrase(self, phrase: str):
        self.phrase = self._normalize(phrase)
        self.reset()
        logger.info(f"Wake word set to '{self.phrase}'")

    def reset(self):
        self.last_result = None
        self._fired.clear()

    def process_transcript(self, transcript: str) -> bool:
        """Check a transcript for the wake word.

        Args:
            transcript: Running transcript from the background recognizer.

        Returns:
            True the first time a given transcript contains the phrase.
        """
        if not self.phrase or not transcript:
            return False
        if self.phrase not in transcript.lower():
            return False
        if transcript in self._fired:
            return False
        self._fired.add(transcript)
        self.last_result = transcript
        logger.debug(f"Wake word detected in: {transcript!r}")
        return True
