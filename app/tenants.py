from __future__ import annotations

from typing import Any

import logging

from app.audit import SecurityAudit
from app.errors import RelayError
from relay.ids import is_uuid

logger = logging.getLogger("relay.tenants")


class TenantError(RelayError):
    pass


def verify_account(
    account_store: Any,
    audit: SecurityAudit,
    account_id: object,
    endpoint: str,
    source: str = "query",
) -> dict:
    """Resolve a caller-supplied account id to an active account or raise."""
    if account_id is None or account_id == "":
        raise TenantError("ACCOUNT_ID_REQUIRED", "accountId is required", 400, "accountId")
    if not is_uuid(account_id):
        audit.log_invalid_account_id(endpoint, account_id, source)
        raise TenantError("ACCOUNT_ID_INVALID", "Invalid accountId format", 400, "accountId")
    account = account_store.get(account_id)
    if not account:
        logger.warning("account_not_found endpoint=%s account_id=%s", endpoint, account_id)
        raise TenantError("ACCOUNT_NOT_FOUND", "Account not found", 404, "accountId")
    if account.get("status") != "active":
        audit.log_unauthorized_access(endpoint, account_id, f"account status {account.get('status')}")
        raise TenantError("ACCOUNT_INACTIVE", "Account is not active", 403, "accountId")
    return account


def verify_client(
    client_store: Any,
    audit: SecurityAudit,
    account_id: str,
    client_id: object,
    endpoint: str,
) -> dict:
    if not client_id:
        raise TenantError("CLIENT_ID_REQUIRED", "clientId is required", 400, "clientId")
    if not is_uuid(client_id):
        raise TenantError("CLIENT_ID_INVALID", "Invalid clientId format", 400, "clientId")
    client = client_store.get_for_account(account_id, client_id)
    if not client:
        owner = client_store.get(client_id)
        audit.log_cross_account_access(
            endpoint,
            account_id,
            "Client",
            client_id,
            actual_account_id=owner.get("account_id") if owner else None,
        )
        raise TenantError("CLIENT_NOT_FOUND", "Client not found", 404, "clientId")
    return client
