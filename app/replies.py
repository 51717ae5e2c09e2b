"""AI reply generation for inbound LinkedIn messages."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from app.audit import SecurityAudit
from app.template_render import TemplateRenderError, render_template

logger = logging.getLogger("relay.replies")

DEFAULT_REPLY_TEMPLATE = """You are responding to a LinkedIn message on behalf of {{ client_name }}.
{% if persona %}

Persona:
{{ persona }}
{% endif %}
{% if documents %}

Context Documents:
{% for doc in documents %}

Document {{ doc["index"] }} ({{ doc["name"] }}):
{{ doc["content"] }}
{% endfor %}
{% endif %}

You received a message from {{ sender_name | default("someone", true) }}: "{{ incoming_text }}"

Generate a professional, friendly, and appropriate response. Keep it concise (2-3 sentences)."""

_RETRY_STATUSES = (429, 500, 502, 503, 504)


class ReplyGenerationError(RuntimeError):
    pass


@dataclass
class ClientAiSettings:
    ai_active: bool = False
    ai_provider: str = "openai"
    persona: str = ""
    documents: list[dict] = field(default_factory=list)
    reply_template: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, client: dict) -> "ClientAiSettings":
        documents = []
        for doc in client.get("documents") or []:
            if isinstance(doc, dict):
                documents.append({"name": doc.get("name") or "Untitled", "content": doc.get("content") or ""})
            elif isinstance(doc, str):
                documents.append({"name": "Untitled", "content": doc})
        return cls(
            ai_active=bool(client.get("ai_active")),
            ai_provider=client.get("ai_provider") or "openai",
            persona=client.get("persona") or "",
            documents=documents,
            reply_template=client.get("reply_template") or None,
            extra=dict(client.get("settings_extra") or {}),
        )


def build_system_prompt(client: dict, settings: ClientAiSettings, incoming_text: str, sender_name: str | None) -> str:
    context = {
        "client_name": client.get("name") or "the account owner",
        "persona": settings.persona,
        "documents": [
            {"index": idx, "name": doc["name"], "content": doc["content"]}
            for idx, doc in enumerate(settings.documents, start=1)
        ],
        "sender_name": sender_name or "",
        "incoming_text": incoming_text,
    }
    return render_template(settings.reply_template or DEFAULT_REPLY_TEMPLATE, context, strict=False).strip()


class ChatProvider:
    def complete(self, messages: list[dict]) -> str:
        raise NotImplementedError


class OpenAIChatProvider(ChatProvider):
    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com",
        timeout: float = 30.0,
        max_tries: int = 3,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._timeout = timeout
        self._max_tries = max_tries
        base = base_url.rstrip("/")
        self._url = f"{base}/chat/completions" if base.endswith("/v1") else f"{base}/v1/chat/completions"
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def complete(self, messages: list[dict]) -> str:
        payload = {
            "model": self._model,
            "messages": messages,
            "temperature": 0.7,
            "max_tokens": 200,
        }
        headers = {"Authorization": f"Bearer {self._api_key}"}
        last_exc: Exception | None = None
        for attempt in range(self._max_tries):
            try:
                resp = self._client.post(self._url, json=payload, headers=headers)
            except httpx.HTTPError as exc:
                last_exc = exc
            else:
                if resp.status_code < 400:
                    data = resp.json()
                    choices = data.get("choices") or []
                    if not choices:
                        raise ReplyGenerationError("OpenAI response had no choices")
                    content = (choices[0].get("message") or {}).get("content") or ""
                    return content.strip()
                if resp.status_code not in _RETRY_STATUSES:
                    raise ReplyGenerationError(f"OpenAI error: {resp.status_code} {resp.text[:200]}")
                last_exc = ReplyGenerationError(f"OpenAI error: {resp.status_code}")
            if attempt + 1 < self._max_tries:
                time.sleep(0.6 * (attempt + 1))
        raise ReplyGenerationError(f"OpenAI request failed: {last_exc}")


class ReplyService:
    def __init__(self, client_store: Any, provider: ChatProvider | None, audit: SecurityAudit) -> None:
        self._clients = client_store
        self._provider = provider
        self._audit = audit

    @property
    def configured(self) -> bool:
        return self._provider is not None

    def generate_reply(self, client_id: str, incoming_text: str, sender_name: str | None, account_id: str) -> str:
        client = self._clients.get_for_account(account_id, client_id)
        if not client:
            owner = self._clients.get(client_id)
            if owner:
                self._audit.log_cross_account_access(
                    "reply_generation",
                    account_id,
                    "Client",
                    client_id,
                    actual_account_id=owner.get("account_id"),
                )
                raise ReplyGenerationError("Unauthorized: client does not belong to this account")
            raise ReplyGenerationError("Client not found")
        settings = ClientAiSettings.from_record(client)
        if not settings.ai_active:
            raise ReplyGenerationError("AI is disabled for this client")
        if self._provider is None:
            logger.error("reply_provider_not_configured client_id=%s", client_id)
            raise ReplyGenerationError("AI provider is not configured")
        try:
            system_prompt = build_system_prompt(client, settings, incoming_text, sender_name)
        except TemplateRenderError as exc:
            raise ReplyGenerationError(f"Reply template failed to render: {exc}") from exc
        logger.info(
            "reply_generation_started client_id=%s provider=%s prompt_chars=%s",
            client_id,
            settings.ai_provider,
            len(system_prompt),
        )
        try:
            reply = self._provider.complete(
                [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": "Generate a reply to this message."},
                ]
            )
        except ReplyGenerationError:
            raise
        except Exception as exc:
            logger.error("reply_provider_failed client_id=%s error=%s", client_id, exc)
            raise ReplyGenerationError(f"Failed to generate reply: {exc}") from exc
        if not reply or not reply.strip():
            raise ReplyGenerationError("AI reply generation returned empty response")
        logger.info("reply_generation_done client_id=%s reply_chars=%s", client_id, len(reply))
        return reply.strip()
