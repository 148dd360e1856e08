"""Text-completion transport backed by an Ollama-compatible chat API."""

import logging

import requests

from inbox_triage.config import Config

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """The model could not be reached or answered with an unusable response."""


class OllamaTransport:
    """Sends a prompt to ``<ollama_url>/api/chat`` and returns the reply text."""

    def __init__(self, config: Config, session: requests.Session | None = None) -> None:
        self._url = f"{config.ollama_url.rstrip('/')}/api/chat"
        self._timeout = config.ollama_timeout
        self._session = session or requests.Session()
        if config.api_key:
            self._session.headers["Authorization"] = f"Bearer {config.api_key}"

    def complete(self, model: str, prompt: str) -> str:
        body = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "stream": False,
        }

        try:
            resp = self._session.post(self._url, json=body, timeout=self._timeout)
            resp.raise_for_status()
            data = resp.json()
            content = data["message"]["content"]
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransportError(f"model unreachable: {exc}") from exc
        except requests.HTTPError as exc:
            raise TransportError(f"model returned HTTP error: {exc}") from exc
        except requests.RequestException as exc:
            raise TransportError(f"request failed: {exc}") from exc
        except (KeyError, TypeError, ValueError) as exc:
            raise TransportError(f"unexpected response: {exc}") from exc

        if not isinstance(content, str):
            raise TransportError(f"unexpected content type {type(content).__name__}")

        logger.debug("Model %s replied with %d chars", model, len(content))
        return content
