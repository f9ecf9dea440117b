"""Plaid transaction sync for linked bank connections."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from django.conf import settings
from django.utils import timezone
from plaid.api import plaid_api
from plaid.api_client import ApiClient
from plaid.configuration import Configuration
from plaid.exceptions import ApiException
from plaid.model.transactions_sync_request import TransactionsSyncRequest

from roundups.exceptions import BankSyncError
from roundups.models import BankConnection
from roundups.services.calculator import RawTransaction

logger = logging.getLogger(__name__)

PLAID_ENV_HOSTS = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}


@dataclass(frozen=True)
class SyncResult:
    added: List[RawTransaction] = field(default_factory=list)
    next_cursor: str = ""
    pending_skipped: int = 0


def _client() -> plaid_api.PlaidApi:
    client_id = getattr(settings, "PLAID_CLIENT_ID", "")
    secret = getattr(settings, "PLAID_SECRET", "")
    env = getattr(settings, "PLAID_ENV", "sandbox")
    if not client_id or not secret:
        raise BankSyncError("PLAID_CLIENT_ID and PLAID_SECRET must be configured.")
    if env not in PLAID_ENV_HOSTS:
        raise BankSyncError(f"Invalid PLAID_ENV: {env}")

    configuration = Configuration(
        host=PLAID_ENV_HOSTS[env],
        api_key={"clientId": client_id, "secret": secret},
    )
    return plaid_api.PlaidApi(ApiClient(configuration))


def _as_dict(obj: Any) -> Dict[str, Any]:
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


def _to_raw_transaction(payload: Dict[str, Any]) -> RawTransaction:
    # Plaid reports money leaving the account as a positive amount.
    amount = -Decimal(str(payload.get("amount") or 0))
    tx_date = payload.get("date")
    if isinstance(tx_date, str):
        tx_date = date.fromisoformat(tx_date)
    categories = list(payload.get("category") or [])
    personal = payload.get("personal_finance_category") or {}
    if isinstance(personal, dict):
        categories.extend(value for value in (personal.get("primary"), personal.get("detailed")) if value)
    return RawTransaction(
        id=payload["transaction_id"],
        amount=amount,
        date=tx_date,
        name=payload.get("merchant_name") or payload.get("name") or "",
        category=tuple(categories),
        currency=payload.get("iso_currency_code"),
    )


def sync_transactions(user_id, bank_connection_id) -> SyncResult:
    """Fetch every transaction added since the connection's stored cursor.

    Pending transactions are left out; Plaid re-issues them under a new id
    once they post. The cursor is returned, not stored: call
    :func:`commit_cursor` once the batch has been applied.
    """

    try:
        connection = BankConnection.objects.get(pk=bank_connection_id, user_id=user_id, is_active=True)
    except BankConnection.DoesNotExist as exc:
        raise BankSyncError(f"No active bank connection {bank_connection_id} for user {user_id}.") from exc

    client = _client()
    timeout = getattr(settings, "PLAID_TIMEOUT_SECONDS", 30)
    page_size = getattr(settings, "PLAID_SYNC_PAGE_SIZE", 250)

    cursor = connection.sync_cursor or None
    added: List[RawTransaction] = []
    pending_skipped = 0
    has_more = True

    while has_more:
        params: Dict[str, Any] = {"access_token": connection.access_token, "count": page_size}
        if cursor:
            params["cursor"] = cursor
        try:
            response = _as_dict(client.transactions_sync(TransactionsSyncRequest(**params), _request_timeout=timeout))
        except ApiException as exc:
            logger.warning("Plaid transactions sync failed for connection %s: %s", connection.pk, exc)
            raise BankSyncError(f"Plaid transactions sync failed: {exc.status} {exc.reason}") from exc
        except OSError as exc:
            logger.warning("Plaid unreachable while syncing connection %s: %s", connection.pk, exc)
            raise BankSyncError(f"Plaid unreachable: {exc}") from exc

        for payload in response.get("added") or []:
            payload = _as_dict(payload)
            if payload.get("pending"):
                pending_skipped += 1
                continue
            added.append(_to_raw_transaction(payload))

        cursor = response.get("next_cursor") or cursor
        has_more = bool(response.get("has_more"))

    logger.info(
        "Synced %s transactions for bank connection %s (pending skipped: %s)",
        len(added),
        connection.pk,
        pending_skipped,
    )
    return SyncResult(added=added, next_cursor=cursor or "", pending_skipped=pending_skipped)


def commit_cursor(connection: BankConnection, cursor: Optional[str]) -> None:
    """Persist ``cursor`` so the next sync resumes after the applied batch."""
    now = timezone.now()
    fields = ["last_synced_at", "updated_at"]
    connection.last_synced_at = now
    if cursor:
        connection.sync_cursor = cursor
        fields.append("sync_cursor")
    connection.save(update_fields=fields)
