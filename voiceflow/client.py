"""HTTP client for the transcription endpoint, used as a speech session's analyzer."""

import logging

import httpx

logger = logging.getLogger(__name__)


class TranscriptionClient:
    def __init__(self, base_url: str = "http://localhost:5000", timeout: float = 60,
                 transport: httpx.AsyncBaseTransport = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def transcribe(self, text: str) -> dict:
        """POST text to ``/api/transcribe``.

        Returns:
            The ``{note, tasks, analysis}`` response body.

        Raises:
            httpx.HTTPStatusError: On a non-2xx response.
        """
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout,
                                     transport=self._transport) as client:
            resp = await client.post("/api/transcribe", json={"text": text})
            resp.raise_for_status()
            result = resp.json()
        logger.info(f"Transcription stored: {len(result.get('tasks', []))} task(s)")
        return result

    async def __call__(self, text: str) -> dict:
        return await self.transcribe(text)
