"""Local gateway implementation for development without a payment processor."""
from __future__ import annotations

import logging
from decimal import Decimal
from threading import Lock
from typing import Dict
from uuid import uuid4

from ..purchases.errors import GatewayError
from .base import GatewayStatus, GatewayTransaction

logger = logging.getLogger("paywall.gateway")


class LocalSandboxPaymentGateway:
    """Keeps transactions in memory.

    New transactions start PROCESSING and move only through :meth:`set_status`,
    unless ``auto_succeed`` is set, in which case they start SUCCEEDED.
    """

    def __init__(self, *, auto_succeed: bool = False) -> None:
        self._initial_status = GatewayStatus.SUCCEEDED if auto_succeed else GatewayStatus.PROCESSING
        self._lock = Lock()
        self._statuses: Dict[str, GatewayStatus] = {}

    def create_transaction(self, amount: Decimal, currency: str, description: str) -> GatewayTransaction:
        if amount < 0:
            raise GatewayError("Amount must be non-negative", retryable=False)
        transaction_id = f"sbx_{uuid4().hex}"
        with self._lock:
            self._statuses[transaction_id] = self._initial_status
        logger.info("Sandbox transaction %s created for %s %s (%s)", transaction_id, amount, currency, description)
        return GatewayTransaction(
            transaction_id=transaction_id,
            client_secret=f"{transaction_id}_secret_{uuid4().hex[:12]}",
        )

    def get_status(self, transaction_id: str) -> GatewayStatus:
        with self._lock:
            status = self._statuses.get(transaction_id)
        if status is None:
            raise GatewayError(f"Unknown sandbox transaction {transaction_id}", retryable=False)
        return status

    def set_status(self, transaction_id: str, status: GatewayStatus) -> None:
        with self._lock:
            if transaction_id not in self._statuses:
                raise KeyError(transaction_id)
            self._statuses[transaction_id] = status


__all__ = ["LocalSandboxPaymentGateway"]
