"""Assistant reply synthesis over chat-completion providers.

Providers are tried in a fixed order and the first usable answer wins:

1. A local OpenAI-compatible server (Ollama) at ``ollama_base_url``.
2. A generic chat endpoint (``omi_chat_endpoint`` + ``omi_api_key``).
3. OpenRouter (``openrouter_api_key``).

Each attempt is best-effort: transport errors and non-2xx responses are
logged and the next provider is tried.
"""

import json
import logging
import re
import sqlite3

import httpx

from jarvis.prompts import build_system_prompt

logger = logging.getLogger(__name__)

OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_SALUTATION = "sir"

_MARKUP_TOKENS = re.compile(r"<\|[^>]*\|>")

COMPLETION_PARAMS = {
    "temperature": 0.4,
    "top_p": 0.9,
    "presence_penalty": 0.1,
    "frequency_penalty": 0.2,
    "max_tokens": 300,
}

# Function-calling schemas advertised to providers that support tools
TOOLS = [
    {
        "type": "function",
        "function": {
            "name": "add_action",
            "description": "Create an action (task, reminder, event, note) for the current user",
            "parameters": {
                "type": "object",
                "properties": {
                    "type": {"type": "string", "enum": ["task", "reminder", "event", "note"]},
                    "text": {"type": "string"},
                    "date": {"type": "string", "description": "ISO datetime, optional"},
                },
                "required": ["type", "text"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "get_actions",
            "description": "List actions for the current user",
            "parameters": {"type": "object", "properties": {}, "additionalProperties": False},
        },
    },
    {
        "type": "function",
        "function": {
            "name": "get_analytics",
            "description": "Get analytics summary for the current user",
            "parameters": {"type": "object", "properties": {}, "additionalProperties": False},
        },
    },
    {
        "type": "function",
        "function": {
            "name": "get_preferences",
            "description": "Get user preference values such as salutation",
            "parameters": {"type": "object", "properties": {}, "additionalProperties": False},
        },
    },
]


class NoChatModelError(RuntimeError):
    """Raised when no provider produced a reply."""


def strip_markup(text: str) -> str:
    return _MARKUP_TOKENS.sub("", text or "").strip()


def get_salutation(db, uid: str) -> str:
    """Return the user's preferred form of address, defaulting to 'sir'."""
    if db is None or not uid:
        return DEFAULT_SALUTATION
    try:
        user = db.get_user(uid)
    except sqlite3.Error as e:
        logger.error(f"Error getting salutation for {uid}: {e}")
        return DEFAULT_SALUTATION
    analytics = (user or {}).get("analytics") or {}
    return analytics.get("salutation") or DEFAULT_SALUTATION


class ReplySynthesizer:
    """Generates Jarvis replies for chat sessions.

    Args:
        config: The ``assistant`` config section.
        db: JarvisDB used to look up the salutation preference.
        transport: Optional httpx transport, used by tests to stub providers.
        timeout: Per-request timeout in seconds.
    """

    def __init__(self, config: dict, db=None, transport: httpx.AsyncBaseTransport | None = None,
                 timeout: float = 30.0):
        self.config = config
        self.db = db
        self.transport = transport
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        c = self.config
        return bool(c.get("ollama_base_url")
                    or (c.get("omi_chat_endpoint") and c.get("omi_api_key"))
                    or c.get("openrouter_api_key"))

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport, timeout=self.timeout)

    def _chat_messages(self, salutation: str, messages: list[dict]) -> list[dict]:
        """Persona system prompt followed by the most recent history_window messages."""
        window = self.config.get("history_window", 10)
        return [{"role": "system", "content": build_system_prompt(salutation)}] + [
            {"role": "user" if m.get("is_user") else "assistant", "content": m.get("text", "")}
            for m in messages[-window:]
        ]

    def _chat_body(self, model: str, salutation: str, messages: list[dict]) -> dict:
        body = {
            "model": model,
            "messages": self._chat_messages(salutation, messages),
            **COMPLETION_PARAMS,
        }
        if self.config.get("tool_calling_enabled"):
            body["tools"] = TOOLS
        return body

    async def _try_ollama(self, client: httpx.AsyncClient, salutation: str, messages: list[dict]) -> str | None:
        base = self.config["ollama_base_url"].rstrip("/")
        headers = {"Authorization": f"Bearer {self.config.get('ollama_api_key') or 'ollama'}"}
        body = self._chat_body(self.config.get("ollama_model") or "gpt-oss:20b", salutation, messages)
        r = await client.post(f"{base}/v1/chat/completions", json=body, headers=headers)
        if not r.is_success:
            logger.warning(f"Ollama returned HTTP {r.status_code}")
            return None
        return _first_choice(r.json()) or None

    async def _try_omi(self, client: httpx.AsyncClient, uid: str, salutation: str,
                       messages: list[dict]) -> str | None:
        headers = {"Authorization": f"Bearer {self.config['omi_api_key']}"}
        body = {"uid": uid, "messages": self._chat_messages(salutation, messages)}
        r = await client.post(self.config["omi_chat_endpoint"], json=body, headers=headers)
        if not r.is_success:
            logger.warning(f"OMI chat endpoint returned HTTP {r.status_code}")
            return None
        data = r.json()
        return data.get("message") or data.get("response") or data.get("text") or f"Certainly, {salutation}."

    async def _try_openrouter(self, client: httpx.AsyncClient, salutation: str, messages: list[dict]) -> str | None:
        headers = {
            "Authorization": f"Bearer {self.config['openrouter_api_key']}",
            "HTTP-Referer": self.config.get("openrouter_referer", ""),
            "X-Title": self.config.get("openrouter_title", ""),
        }
        body = self._chat_body(self.config.get("openrouter_model") or "openai/gpt-4o-mini", salutation, messages)
        r = await client.post(OPENROUTER_URL, json=body, headers=headers)
        if not r.is_success:
            logger.warning(f"OpenRouter returned HTTP {r.status_code}")
            return None
        content = _first_choice(r.json()) or f"As you wish, {salutation}."
        return strip_markup(content)

    async def generate_reply(self, messages: list[dict], uid: str) -> str:
        """Produce the assistant's next message for a conversation.

        Args:
            messages: Chat history as dicts with text and is_user.
            uid: User the conversation belongs to.

        Returns:
            Reply text from the first provider that answered.

        Raises:
            NoChatModelError: No provider is configured or all of them failed.
        """
        salutation = get_salutation(self.db, uid)
        c = self.config

        async with self._client() as client:
            if c.get("ollama_base_url"):
                try:
                    reply = await self._try_ollama(client, salutation, messages)
                    if reply:
                        return reply
                except (httpx.HTTPError, ValueError) as e:
                    logger.error(f"Ollama chat error: {e}")

            if c.get("omi_chat_endpoint") and c.get("omi_api_key"):
                try:
                    reply = await self._try_omi(client, uid, salutation, messages)
                    if reply:
                        return reply
                except (httpx.HTTPError, ValueError) as e:
                    logger.error(f"OMI chat error: {e}")

            if c.get("openrouter_api_key"):
                try:
                    reply = await self._try_openrouter(client, salutation, messages)
                    if reply:
                        return reply
                except (httpx.HTTPError, ValueError) as e:
                    logger.error(f"OpenRouter error: {e}")

        raise NoChatModelError(
            "No chat model configured. Set OPENROUTER_API_KEY or OMI_CHAT_ENDPOINT or OLLAMA_BASE_URL.")

    async def complete_json(self, system: str, prompt: str, temperature: float = 0.3,
                            max_tokens: int = 500) -> dict | None:
        """Ask OpenRouter for a JSON object. Returns None if unavailable or unparseable."""
        key = self.config.get("openrouter_api_key")
        if not key:
            return None
        body = {
            "model": self.config.get("openrouter_model") or "openai/gpt-4o-mini",
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        try:
            async with self._client() as client:
                r = await client.post(OPENROUTER_URL, json=body, headers={"Authorization": f"Bearer {key}"})
                content = _first_choice(r.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"JSON completion error: {e}")
            return None
        if not content:
            return None
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse JSON completion: {e}")
            return None
        return parsed if isinstance(parsed, dict) else None


def _first_choice(data) -> str | None:
    try:
        return data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return None
