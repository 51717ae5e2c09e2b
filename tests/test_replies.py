import json
import os
import sys
import unittest
import uuid
from unittest import mock

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

import httpx

from app.audit import SecurityAudit
from app.replies import (
    ClientAiSettings,
    OpenAIChatProvider,
    ReplyGenerationError,
    ReplyService,
    build_system_prompt,
)
from app.stores import MemoryAuditStore, MemoryClientStore
from app.template_render import TemplateRenderError, render_template, validate_template


def _completion(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


class TestOpenAIChatProvider(unittest.TestCase):
    def test_posts_chat_completion(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=_completion("  Sounds great!  "))

        provider = OpenAIChatProvider("sk-test", model="gpt-test", transport=httpx.MockTransport(handler))
        reply = provider.complete([{"role": "user", "content": "hi"}])
        self.assertEqual(reply, "Sounds great!")
        self.assertEqual(seen["url"], "https://api.openai.com/v1/chat/completions")
        self.assertEqual(seen["auth"], "Bearer sk-test")
        self.assertEqual(seen["body"]["model"], "gpt-test")

    def test_base_url_with_version_suffix(self) -> None:
        urls = []

        def handler(request: httpx.Request) -> httpx.Response:
            urls.append(str(request.url))
            return httpx.Response(200, json=_completion("ok"))

        provider = OpenAIChatProvider(
            "sk-test",
            base_url="http://llm.local/v1",
            transport=httpx.MockTransport(handler),
        )
        provider.complete([])
        self.assertEqual(urls, ["http://llm.local/v1/chat/completions"])

    def test_retries_rate_limit_then_succeeds(self) -> None:
        statuses = iter([429, 200])

        def handler(request: httpx.Request) -> httpx.Response:
            status = next(statuses)
            if status == 200:
                return httpx.Response(200, json=_completion("second time"))
            return httpx.Response(status, json={"error": "slow down"})

        provider = OpenAIChatProvider("sk-test", transport=httpx.MockTransport(handler))
        with mock.patch("app.replies.time.sleep") as sleep:
            self.assertEqual(provider.complete([]), "second time")
        sleep.assert_called_once()

    def test_client_error_not_retried(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(401, json={"error": "bad key"})

        provider = OpenAIChatProvider("sk-test", transport=httpx.MockTransport(handler))
        with self.assertRaises(ReplyGenerationError):
            provider.complete([])
        self.assertEqual(len(calls), 1)

    def test_gives_up_after_max_tries(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        provider = OpenAIChatProvider("sk-test", max_tries=2, transport=httpx.MockTransport(handler))
        with mock.patch("app.replies.time.sleep"):
            with self.assertRaises(ReplyGenerationError):
                provider.complete([])


class _EchoProvider:
    def __init__(self) -> None:
        self.messages = None

    def complete(self, messages):
        self.messages = messages
        return "Thanks for reaching out."


class TestReplyService(unittest.TestCase):
    def setUp(self) -> None:
        self.account_id = str(uuid.uuid4())
        self.clients = MemoryClientStore()
        self.audit_store = MemoryAuditStore()
        self.audit = SecurityAudit(self.audit_store)
        self.provider = _EchoProvider()
        self.service = ReplyService(self.clients, self.provider, self.audit)

    def test_uses_client_documents(self) -> None:
        client = self.clients.create(
            {
                "account_id": self.account_id,
                "name": "Grace",
                "ai_active": True,
                "documents": [{"name": "Pricing", "content": "Plans start at $10"}, "Office hours 9-5"],
            }
        )
        reply = self.service.generate_reply(client["id"], "How much?", "Ada", self.account_id)
        self.assertEqual(reply, "Thanks for reaching out.")
        prompt = self.provider.messages[0]["content"]
        self.assertIn("Document 1 (Pricing):", prompt)
        self.assertIn("Plans start at $10", prompt)
        self.assertIn("Document 2 (Untitled):", prompt)
        self.assertIn("on behalf of Grace", prompt)

    def test_custom_template(self) -> None:
        client = self.clients.create(
            {
                "account_id": self.account_id,
                "ai_active": True,
                "reply_template": "Reply to {{ sender_name }} about: {{ incoming_text | upper }}",
            }
        )
        self.service.generate_reply(client["id"], "pricing", "Ada", self.account_id)
        self.assertEqual(self.provider.messages[0]["content"], "Reply to Ada about: PRICING")

    def test_cross_account_client_is_audited(self) -> None:
        client = self.clients.create({"account_id": self.account_id, "ai_active": True})
        with self.assertRaises(ReplyGenerationError):
            self.service.generate_reply(client["id"], "hi", "Ada", str(uuid.uuid4()))
        self.assertEqual(len(self.audit_store.list("CROSS_ACCOUNT_ACCESS")), 1)

    def test_unconfigured_provider(self) -> None:
        client = self.clients.create({"account_id": self.account_id, "ai_active": True})
        service = ReplyService(self.clients, None, self.audit)
        self.assertFalse(service.configured)
        with self.assertRaises(ReplyGenerationError):
            service.generate_reply(client["id"], "hi", "Ada", self.account_id)

    def test_ai_disabled(self) -> None:
        client = self.clients.create({"account_id": self.account_id})
        with self.assertRaises(ReplyGenerationError):
            self.service.generate_reply(client["id"], "hi", "Ada", self.account_id)


class TestPromptTemplates(unittest.TestCase):
    def test_default_prompt_without_sender(self) -> None:
        client = {"name": "Grace"}
        prompt = build_system_prompt(client, ClientAiSettings(ai_active=True), "hello", None)
        self.assertIn('You received a message from someone: "hello"', prompt)
        self.assertNotIn("Persona:", prompt)

    def test_sandbox_blocks_attribute_access(self) -> None:
        with self.assertRaises(TemplateRenderError):
            render_template("{{ text.__class__ }}", {"text": "x"}, strict=True)

    def test_strict_mode_rejects_missing_names(self) -> None:
        with self.assertRaises(TemplateRenderError):
            render_template("{{ missing }}", {}, strict=True)

    def test_validate_template_reports_syntax_error(self) -> None:
        self.assertIsNone(validate_template("Hi {{ name }}"))
        self.assertIn("line 1", validate_template("Hi {{ name "))


if __name__ == "__main__":
    unittest.main()
