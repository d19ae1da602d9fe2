"""
Teaching assistant backed by an OpenAI-compatible chat completions API.

Calls are blocking (requests) and must be run off the dispatcher, e.g. via
``SerialDispatcher.offload_blocking``.
"""

from typing import Optional

import requests

from constants import (
    OPENAI_API_KEY, OPENAI_BASE_URL, OPENAI_MAX_TOKENS, OPENAI_MODEL, OPENAI_TEMPERATURE, OPENAI_TIMEOUT,
)
from logging_config import get_logger

logger = get_logger(__name__)

SYSTEM_ROLE = ("You are a friendly Python programming teaching assistant helping students learn. "
               "Answer in an encouraging, educational tone.")
CONFLICT_SYSTEM_ROLE = ("You are an experienced programming teaching assistant who helps students resolve "
                        "conflicts in collaborative programming. Give practical, friendly advice in clear paragraphs.")

PROMPTS = {
    "explain_code": "Analyse this Python code and give constructive feedback and learning suggestions.",
    "check_errors": "Check this Python code for errors and suggest fixes.",
    "improve_code": "Suggest improvements that make this Python code more elegant and efficient.",
    "collaboration_guide": "Give advice and guidance on programming as a team in a collaborative environment.",
}

ACTION_ALIASES = {
    "explain_code": "explain_code",
    "analyze": "explain_code",
    "check_errors": "check_errors",
    "check": "check_errors",
    "improve_code": "improve_code",
    "suggest": "improve_code",
    "improvement_tips": "improve_code",
    "conflict_resolution": "conflict_resolution",
    "conflict_analysis": "conflict_resolution",
    "resolve": "conflict_resolution",
    "collaboration_guide": "collaboration_guide",
}


class CompletionError(Exception):
    pass


class CompletionClient:
    def __init__(self, api_key: str = OPENAI_API_KEY, model: str = OPENAI_MODEL,
                 base_url: str = OPENAI_BASE_URL, max_tokens: int = OPENAI_MAX_TOKENS,
                 temperature: float = OPENAI_TEMPERATURE, timeout: float = OPENAI_TIMEOUT / 1000,
                 session: Optional[requests.Session] = None):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def complete(self, system_prompt: str, user_prompt: str, max_tokens: Optional[int] = None,
                 temperature: Optional[float] = None) -> str:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": self.temperature if temperature is None else temperature,
        }
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        try:
            r = self.session.post(f"{self.base_url}/chat/completions", json=payload, headers=headers,
                                  timeout=self.timeout)
            r.raise_for_status()
            data = r.json()
        except (requests.RequestException, ValueError) as e:
            raise CompletionError(f"completion request failed: {e}") from e
        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError):
            raise CompletionError("unexpected completion response format")


class TeachingAssistant:
    def __init__(self, client: Optional[CompletionClient] = None):
        self.client = client or CompletionClient()

    @property
    def enabled(self) -> bool:
        return self.client.enabled

    @staticmethod
    def resolve_action(action: str) -> Optional[str]:
        return ACTION_ALIASES.get(action)

    @staticmethod
    def extract_code(action: str, data: Optional[dict]) -> str:
        if not data:
            return ""
        key = "userCode" if action == "conflict_analysis" else "code"
        return data.get(key) or ""

    def answer(self, action: str, code: str, data: Optional[dict] = None,
               user_name: str = "", room_id: Optional[str] = None) -> str:
        canonical = self.resolve_action(action)
        if canonical is None:
            raise ValueError(f"unknown action {action}")
        logger.info(f"Requesting completion for {action} from {user_name} ({len(code)} chars)")

        if canonical == "conflict_resolution":
            conflict = dict(data or {}) if action == "conflict_analysis" else {"userCode": code}
            prompt = conflict_prompt(
                user_code=conflict.get("userCode") or "",
                server_code=conflict.get("serverCode") or "",
                user_version=conflict.get("userVersion") or 0,
                server_version=conflict.get("serverVersion") or 0,
                conflict_user=conflict.get("conflictUser") or user_name,
                room_id=conflict.get("roomId") or room_id or "unknown room",
            )
            return self.client.complete(CONFLICT_SYSTEM_ROLE, prompt,
                                        max_tokens=min(self.client.max_tokens, 1500), temperature=0.3)

        if canonical == "collaboration_guide":
            prompt = (f"{PROMPTS[canonical]}\n\nThe current code in the shared editor is:\n\n{code}\n\n"
                      f"Context: user {user_name} in room {room_id}\n\nPlease give collaboration advice.")
        else:
            prompt = f"{PROMPTS[canonical]}\n\n{code}"
        return self.client.complete(SYSTEM_ROLE, prompt)


def conflict_prompt(user_code: str, server_code: str, user_version: int, server_version: int,
                    conflict_user: str, room_id: str) -> str:
    return f"""As a Python teaching assistant, analyse this collaboration conflict and suggest a resolution.

Conflict:
- Room: {room_id}
- Conflicting classmate: {conflict_user}
- My version: {user_version}
- Classmate's version: {server_version}

My code:
```python
{user_code or '# (empty)'}
```

Classmate's code:
```python
{server_code or "# (classmate's code)"}
```

Please cover:
1. Why the conflict happened
2. The differences between the two versions (if there is code)
3. Concrete steps to resolve it together
4. How to avoid similar conflicts in future

Even if the code is empty, give useful collaboration advice."""
