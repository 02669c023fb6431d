"""HTTP side of the backend: synchronous query fallback and speech synthesis.

POST /query {question} -> {answer}
POST /speak {text}     -> audio bytes (200) | no content (204) | error (5xx)

A 204 from /speak is the backend's way of saying "synthesize locally".
"""

import httpx

DEFAULT_TIMEOUT = 30.0
NO_ANSWER = "No answer returned."


class BackendClient:
    """Async httpx client for /query and /speak.

    Args:
        base_url: Backend root, e.g. http://localhost:3000
        timeout: Per-request timeout in seconds
        transport: optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(self, base_url, timeout=DEFAULT_TIMEOUT, transport=None):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout,
                                         transport=transport)

    async def query(self, question: str) -> str:
        """Ask a question without streaming.

        Raises:
            httpx.HTTPError: on transport failure or non-2xx status
        """
        resp = await self._client.post("/query", json={"question": question})
        resp.raise_for_status()
        try:
            answer = resp.json().get("answer")
        except (ValueError, AttributeError):
            answer = None
        return (answer or "").strip() or NO_ANSWER

    async def synthesize(self, text: str):
        """Fetch synthesized audio for ``text``.

        Returns the audio bytes, or None when the backend answers 204.

        Raises:
            httpx.HTTPError: on transport failure or non-2xx status
        """
        resp = await self._client.post("/speak", json={"text": text})
        if resp.status_code == 204:
            return None
        resp.raise_for_status()
        return resp.content or None

    async def aclose(self):
        await self._client.aclose()
