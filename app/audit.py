"""Security audit trail for tenant-isolation violations.

Entries go to the dedicated ``relay.security`` logger and to an audit store,
so they can be routed and queried apart from ordinary request logs.
"""

from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger("relay.security")

CROSS_ACCOUNT_ACCESS = "CROSS_ACCOUNT_ACCESS"
UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"
INVALID_ACCOUNT_ID = "INVALID_ACCOUNT_ID"


class SecurityAudit:
    def __init__(self, store: Any) -> None:
        self._store = store

    def log_violation(self, violation_type: str, **details: Any) -> dict:
        logger.error("security_violation type=%s details=%s", violation_type, details)
        return self._store.add(violation_type, details)

    def log_unauthorized_access(self, endpoint: str, account_id: str | None, reason: str) -> dict:
        return self.log_violation(
            UNAUTHORIZED_ACCESS,
            endpoint=endpoint,
            account_id=account_id,
            reason=reason,
        )

    def log_cross_account_access(
        self,
        endpoint: str,
        requested_account_id: str | None,
        resource_type: str,
        resource_id: str | None,
        actual_account_id: str | None = None,
    ) -> dict:
        return self.log_violation(
            CROSS_ACCOUNT_ACCESS,
            endpoint=endpoint,
            requested_account_id=requested_account_id,
            actual_account_id=actual_account_id,
            resource_type=resource_type,
            resource_id=resource_id,
        )

    def log_invalid_account_id(self, endpoint: str, account_id: object, source: str) -> dict:
        return self.log_violation(
            INVALID_ACCOUNT_ID,
            endpoint=endpoint,
            account_id=str(account_id)[:64],
            source=source,
        )
