"""Idempotent intake of inbound LinkedIn messages.

A message is keyed by ``(account_id, idempotency_key)``; redelivery of the
same key returns the first delivery's outcome instead of queueing a second
reply.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from app.audit import SecurityAudit
from app.errors import RelayError
from app.replies import ClientAiSettings, ReplyService
from app.stores import DuplicateKeyError
from app.tenants import verify_client
from relay.actions import REPLY_FAILED, REPLY_NONE, REPLY_QUEUED

logger = logging.getLogger("relay.ingest")

_REQUIRED_FIELDS = ("clientId", "conversationId", "senderName", "incomingText", "idempotencyKey")


class IngestError(RelayError):
    pass


@dataclass
class IngestResult:
    message_id: str
    action_id: str | None
    duplicate: bool = False
    reply_status: str = REPLY_QUEUED


@dataclass
class Ingestion:
    """Collaborators shared by the ingestion entry points."""

    client_store: Any
    message_store: Any
    action_store: Any
    tx_mgr: Any
    replies: ReplyService
    audit: SecurityAudit


def _duplicate_result(message: dict) -> IngestResult:
    """Outcome of the first delivery, as it stands now.

    A first delivery whose reply generation failed is still the original
    outcome: the redelivery reports ``duplicate`` with no action id and a
    ``failed`` reply status, and recovery goes through reprocessing rather
    than a second ingest. ``queued`` with no action id means the first
    delivery is still generating its reply.
    """
    action_id = message.get("action_id")
    return IngestResult(
        str(message["id"]),
        str(action_id) if action_id else None,
        True,
        message.get("reply_status") or REPLY_NONE,
    )


def missing_fields(body: dict) -> list[str]:
    return [name for name in _REQUIRED_FIELDS if not body.get(name)]


def _queue_reply(deps: Ingestion, message: dict, account_id: str, client_id: str, reply_text: str) -> dict:
    tx = deps.tx_mgr.begin()
    try:
        action = deps.action_store.enqueue(
            {
                "account_id": account_id,
                "client_id": client_id,
                "type": "sendMessage",
                "payload": {
                    "conversationId": message["conversation_id"],
                    "messageText": reply_text,
                },
            }
        )
        deps.message_store.update(
            message["id"],
            {"reply_text": reply_text, "reply_status": REPLY_QUEUED, "action_id": action["id"]},
        )
        tx.commit()
    except Exception:
        tx.rollback()
        raise
    return action


def ingest_message(
    deps: Ingestion,
    account_id: str,
    client_id: str,
    conversation_id: str,
    sender_name: str,
    incoming_text: str,
    idempotency_key: str,
    endpoint: str = "/api/messages/incoming",
) -> IngestResult:
    client = verify_client(deps.client_store, deps.audit, account_id, client_id, endpoint)

    existing = deps.message_store.get_by_idempotency(account_id, idempotency_key)
    if existing:
        logger.info("message_duplicate idempotency_key=%s message_id=%s", idempotency_key, existing["id"])
        return _duplicate_result(existing)

    if not ClientAiSettings.from_record(client).ai_active:
        logger.warning("message_rejected reason=ai_disabled client_id=%s", client_id)
        raise IngestError("AI_DISABLED", "AI is disabled for this client", 400, "clientId")

    try:
        message = deps.message_store.create(
            {
                "account_id": account_id,
                "client_id": client_id,
                "conversation_id": conversation_id,
                "sender_name": sender_name,
                "incoming_text": incoming_text,
                "idempotency_key": idempotency_key,
                "reply_status": REPLY_QUEUED,
            }
        )
    except DuplicateKeyError:
        # A concurrent delivery with the same key won the insert.
        existing = deps.message_store.get_by_idempotency(account_id, idempotency_key)
        if not existing:
            raise
        logger.info("message_duplicate_race idempotency_key=%s message_id=%s", idempotency_key, existing["id"])
        return _duplicate_result(existing)

    logger.info(
        "message_saved message_id=%s client_id=%s conversation_id=%s chars=%s",
        message["id"],
        client_id,
        conversation_id,
        len(incoming_text),
    )
    try:
        reply_text = deps.replies.generate_reply(client_id, incoming_text, sender_name, account_id)
        action = _queue_reply(deps, message, account_id, client_id, reply_text)
    except Exception as exc:
        deps.message_store.update(message["id"], {"reply_status": REPLY_FAILED})
        logger.error("message_reply_failed message_id=%s error=%s", message["id"], exc)
        raise
    deps.client_store.increment_replies(client_id)
    logger.info("message_reply_queued message_id=%s action_id=%s", message["id"], action["id"])
    return IngestResult(str(message["id"]), str(action["id"]), False)


def reprocess_failed_messages(deps: Ingestion, account_id: str, client_id: str, limit: int = 50) -> dict:
    """Regenerate replies for a client's messages that never got one queued."""
    client = verify_client(deps.client_store, deps.audit, account_id, client_id, "/api/messages/reprocess")
    if not ClientAiSettings.from_record(client).ai_active:
        raise IngestError("AI_DISABLED", "AI is disabled for this client. Please enable AI first.", 400, "clientId")
    pending = deps.message_store.list(
        account_id,
        client_id=client_id,
        reply_statuses=[REPLY_NONE, REPLY_FAILED],
        limit=limit,
        oldest_first=True,
    )
    processed = 0
    failed = 0
    for message in pending:
        try:
            reply_text = deps.replies.generate_reply(client_id, message["incoming_text"], message.get("sender_name"), account_id)
            _queue_reply(deps, message, account_id, client_id, reply_text)
            processed += 1
        except Exception as exc:
            deps.message_store.update(message["id"], {"reply_status": REPLY_FAILED})
            logger.warning("message_reprocess_failed message_id=%s error=%s", message["id"], exc)
            failed += 1
    if processed:
        deps.client_store.increment_replies(client_id, processed)
    logger.info(
        "messages_reprocessed client_id=%s processed=%s failed=%s total=%s",
        client_id,
        processed,
        failed,
        len(pending),
    )
    return {"processed": processed, "failed": failed, "total": len(pending)}
