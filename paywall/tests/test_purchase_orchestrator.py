"""Unit tests for the purchase orchestrator."""
from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

import pytest

from paywall.app.gateway import GatewayStatus, GatewayTransaction
from paywall.app.purchases import (
    AlreadyOwnedError,
    AlreadyPendingError,
    ConfirmationOutcome,
    GatewayError,
    InconsistentStateError,
    InMemoryEntitlementStore,
    Material,
    NotFoundError,
    PaymentFailedError,
    Purchase,
    PurchaseAuditEvent,
    PurchaseAuditEventType,
    PurchaseOrchestrator,
    PurchaseStatus,
)
from paywall.app.purchases.service import OwnershipInvalidator, PurchaseEventLogger


class ScriptedGateway:
    """Fake gateway with scripted statuses, errors, and latency."""

    def __init__(self) -> None:
        self.statuses: Dict[str, GatewayStatus] = {}
        self.created: List[Dict[str, object]] = []
        self.create_error: Optional[Exception] = None
        self.status_error: Optional[Exception] = None
        self.create_delay: float = 0.0
        self.status_calls: int = 0
        self._counter = 0
        self._lock = threading.Lock()

    def create_transaction(self, amount: Decimal, currency: str, description: str) -> GatewayTransaction:
        if self.create_delay:
            time.sleep(self.create_delay)
        if self.create_error is not None:
            raise self.create_error
        with self._lock:
            self._counter += 1
            transaction_id = f"tx_{self._counter}"
            self.created.append({"amount": amount, "currency": currency, "description": description})
            self.statuses[transaction_id] = GatewayStatus.PROCESSING
        return GatewayTransaction(transaction_id=transaction_id, client_secret=f"{transaction_id}_secret")

    def get_status(self, transaction_id: str) -> GatewayStatus:
        with self._lock:
            self.status_calls += 1
        if self.status_error is not None:
            raise self.status_error
        return self.statuses[transaction_id]


class InMemoryMaterialCatalog:
    def __init__(self, materials: Sequence[Material]) -> None:
        self._materials = {m.material_id: m for m in materials}

    def get_material(self, material_id: str) -> Optional[Material]:
        return self._materials.get(material_id)

    def list_materials(self) -> List[Material]:
        return list(self._materials.values())


class InMemoryUserDirectory:
    def __init__(self, user_ids: Sequence[str]) -> None:
        self._user_ids = set(user_ids)

    def user_exists(self, user_id: str) -> bool:
        return user_id in self._user_ids


class RecordingEventLogger(PurchaseEventLogger):
    def __init__(self) -> None:
        self.events: List[PurchaseAuditEvent] = []
        self._lock = threading.Lock()

    def log(self, event: PurchaseAuditEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: PurchaseAuditEventType) -> List[PurchaseAuditEvent]:
        return [event for event in self.events if event.event_type == event_type]


class RecordingInvalidator(OwnershipInvalidator):
    def __init__(self) -> None:
        self.calls: List[tuple[str, str]] = []

    def invalidate_ownership(self, user_id: str, material_id: str) -> None:
        self.calls.append((user_id, material_id))


MATERIAL = Material(material_id="m1", title="Linear Algebra Notes", price=Decimal("1500.00"), content_ref="m1.pdf")
OTHER_MATERIAL = Material(material_id="m2", title="Free Sample", price=Decimal("0"), content_ref="m2.pdf")


@pytest.fixture()
def orchestrator_setup():
    store = InMemoryEntitlementStore()
    gateway = ScriptedGateway()
    event_logger = RecordingEventLogger()
    invalidator = RecordingInvalidator()
    orchestrator = PurchaseOrchestrator(
        store=store,
        gateway=gateway,
        materials=InMemoryMaterialCatalog([MATERIAL, OTHER_MATERIAL]),
        users=InMemoryUserDirectory(["u1", "u2"]),
        event_logger=event_logger,
        ownership_invalidator=invalidator,
    )
    return orchestrator, store, gateway, event_logger, invalidator


def test_initiate_creates_purchase_with_gateway_transaction(orchestrator_setup):
    orchestrator, store, gateway, event_logger, _ = orchestrator_setup

    purchase = orchestrator.initiate("u1", "m1")

    assert purchase.status == PurchaseStatus.CREATED
    assert purchase.external_transaction_id == "tx_1"
    assert purchase.external_client_secret == "tx_1_secret"
    assert purchase.price_charged == Decimal("1500.00")
    assert purchase.currency == "usd"
    assert gateway.created == [
        {"amount": Decimal("1500.00"), "currency": "usd", "description": "Purchase of Linear Algebra Notes"}
    ]
    assert store.get_by_transaction_id("tx_1").purchase_id == purchase.purchase_id
    assert [e.event_type for e in event_logger.events] == [PurchaseAuditEventType.INITIATED]


def test_initiate_rejects_unknown_user_and_material(orchestrator_setup):
    orchestrator, store, gateway, _, _ = orchestrator_setup

    with pytest.raises(NotFoundError):
        orchestrator.initiate("ghost", "m1")
    with pytest.raises(NotFoundError):
        orchestrator.initiate("u1", "missing")

    assert gateway.created == []
    assert store.list_all() == []


def test_successful_purchase_scenario(orchestrator_setup):
    orchestrator, _, gateway, event_logger, invalidator = orchestrator_setup

    p1 = orchestrator.initiate("u1", "m1")
    assert orchestrator.is_owned("u1", "m1") is False

    gateway.statuses[p1.external_transaction_id] = GatewayStatus.SUCCEEDED
    result = orchestrator.confirm(p1.external_transaction_id)

    assert result.outcome == ConfirmationOutcome.COMPLETED
    assert result.replayed is False
    assert result.purchase.status == PurchaseStatus.COMPLETED
    assert orchestrator.is_owned("u1", "m1") is True
    assert invalidator.calls == [("u1", "m1")]
    assert len(event_logger.of_type(PurchaseAuditEventType.COMPLETED)) == 1

    with pytest.raises(AlreadyOwnedError) as exc_info:
        orchestrator.initiate("u1", "m1")
    assert exc_info.value.detail == {"purchase_id": p1.purchase_id}

    p2 = orchestrator.initiate("u2", "m1")
    assert p2.status == PurchaseStatus.CREATED
    assert p2.purchase_id != p1.purchase_id


def test_price_charged_is_fixed_at_initiation(orchestrator_setup):
    orchestrator, store, gateway, _, _ = orchestrator_setup

    purchase = orchestrator.initiate("u1", "m1")
    orchestrator.materials._materials["m1"] = MATERIAL.model_copy(update={"price": Decimal("2500.00")})
    gateway.statuses[purchase.external_transaction_id] = GatewayStatus.SUCCEEDED
    result = orchestrator.confirm(purchase.external_transaction_id)

    assert result.purchase.price_charged == Decimal("1500.00")
    assert store.get(purchase.purchase_id).price_charged == Decimal("1500.00")
    assert [p.price_charged for p in orchestrator.list_user_purchases("u1")] == [Decimal("1500.00")]
    assert orchestrator.materials.get_material("m1").price == Decimal("2500.00")


def test_failed_payment_scenario(orchestrator_setup):
    orchestrator, _, gateway, event_logger, invalidator = orchestrator_setup

    purchase = orchestrator.initiate("u1", "m1")
    gateway.statuses[purchase.external_transaction_id] = GatewayStatus.FAILED

    with pytest.raises(PaymentFailedError) as exc_info:
        orchestrator.confirm(purchase.external_transaction_id)

    assert exc_info.value.purchase.status == PurchaseStatus.FAILED
    assert exc_info.value.to_http_exception().status_code == 402
    assert orchestrator.is_owned("u1", "m1") is False
    assert invalidator.calls == []
    assert len(event_logger.of_type(PurchaseAuditEventType.PAYMENT_FAILED)) == 1

    retry = orchestrator.initiate("u1", "m1")
    assert retry.status == PurchaseStatus.CREATED
    assert retry.purchase_id != purchase.purchase_id


def test_canceled_payment_is_recorded_as_failed(orchestrator_setup):
    orchestrator, store, gateway, _, _ = orchestrator_setup

    purchase = orchestrator.initiate("u1", "m1")
    gateway.statuses[purchase.external_transaction_id] = GatewayStatus.CANCELED

    with pytest.raises(PaymentFailedError):
        orchestrator.confirm(purchase.external_transaction_id)

    assert store.get(purchase.purchase_id).status == PurchaseStatus.FAILED


def test_confirm_is_idempotent_after_success(orchestrator_setup):
    orchestrator, store, gateway, event_logger, _ = orchestrator_setup

    purchase = orchestrator.initiate("u1", "m1")
    gateway.statuses[purchase.external_transaction_id] = GatewayStatus.SUCCEEDED

    first = orchestrator.confirm(purchase.external_transaction_id)
    calls_after_first = gateway.status_calls
    second = orchestrator.confirm(purchase.external_transaction_id)

    assert first.purchase.status == second.purchase.status == PurchaseStatus.COMPLETED
    assert first.purchase.purchase_id == second.purchase.purchase_id
    assert second.outcome == ConfirmationOutcome.COMPLETED
    assert second.replayed is True
    assert gateway.status_calls == calls_after_first
    assert len([p for p in store.list_for_user("u1") if p.status == PurchaseStatus.COMPLETED]) == 1
    assert len(event_logger.of_type(PurchaseAuditEventType.COMPLETED)) == 1


def test_confirm_replays_failure_without_raising(orchestrator_setup):
    orchestrator, _, gateway, _, _ = orchestrator_setup

    purchase = orchestrator.initiate("u1", "m1")
    gateway.statuses[purchase.external_transaction_id] = GatewayStatus.FAILED
    with pytest.raises(PaymentFailedError):
        orchestrator.confirm(purchase.external_transaction_id)

    replay = orchestrator.confirm(purchase.external_transaction_id)

    assert replay.outcome == ConfirmationOutcome.PAYMENT_FAILED
    assert replay.replayed is True


def test_confirm_reports_pending_and_moves_to_processing_once(orchestrator_setup):
    orchestrator, store, gateway, event_logger, _ = orchestrator_setup

    purchase = orchestrator.initiate("u1", "m1")

    first = orchestrator.confirm(purchase.external_transaction_id)
    second = orchestrator.confirm(purchase.external_transaction_id)

    assert first.outcome == second.outcome == ConfirmationOutcome.PAYMENT_PENDING
    assert store.get(purchase.purchase_id).status == PurchaseStatus.PROCESSING
    assert len(event_logger.of_type(PurchaseAuditEventType.PROCESSING)) == 1

    gateway.statuses[purchase.external_transaction_id] = GatewayStatus.SUCCEEDED
    final = orchestrator.confirm(purchase.external_transaction_id)
    assert final.outcome == ConfirmationOutcome.COMPLETED


def test_confirm_ignores_late_gateway_status_for_final_purchase(orchestrator_setup):
    orchestrator, store, gateway, _, _ = orchestrator_setup

    purchase = orchestrator.initiate("u1", "m1")
    gateway.statuses[purchase.external_transaction_id] = GatewayStatus.SUCCEEDED
    orchestrator.confirm(purchase.external_transaction_id)

    gateway.statuses[purchase.external_transaction_id] = GatewayStatus.FAILED
    result = orchestrator.confirm(purchase.external_transaction_id)

    assert result.outcome == ConfirmationOutcome.COMPLETED
    assert store.get(purchase.purchase_id).status == PurchaseStatus.COMPLETED


def test_confirm_unknown_transaction_or_other_user_is_not_found(orchestrator_setup):
    orchestrator, _, _, _, _ = orchestrator_setup

    purchase = orchestrator.initiate("u1", "m1")

    with pytest.raises(NotFoundError):
        orchestrator.confirm("tx_missing")
    with pytest.raises(NotFoundError):
        orchestrator.confirm(purchase.external_transaction_id, user_id="u2")


def test_confirm_propagates_gateway_errors_without_writing(orchestrator_setup):
    orchestrator, store, gateway, _, _ = orchestrator_setup

    purchase = orchestrator.initiate("u1", "m1")
    gateway.status_error = GatewayError("timeout", retryable=True)

    with pytest.raises(GatewayError) as exc_info:
        orchestrator.confirm(purchase.external_transaction_id)

    assert exc_info.value.retryable is True
    assert store.get(purchase.purchase_id).status == PurchaseStatus.CREATED


def test_concurrent_initiate_yields_single_active_purchase(orchestrator_setup):
    orchestrator, store, gateway, _, _ = orchestrator_setup
    gateway.create_delay = 0.01
    workers = 12
    barrier = threading.Barrier(workers)
    created: List[Purchase] = []
    rejected: List[Exception] = []
    lock = threading.Lock()

    def attempt() -> None:
        barrier.wait()
        try:
            purchase = orchestrator.initiate("u1", "m1")
        except (AlreadyPendingError, AlreadyOwnedError) as exc:
            with lock:
                rejected.append(exc)
        else:
            with lock:
                created.append(purchase)

    threads = [threading.Thread(target=attempt) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(created) == 1
    assert len(rejected) == workers - 1
    assert len(gateway.created) == 1
    assert len(store.list_for_user("u1")) == 1


def test_concurrent_confirm_settles_once(orchestrator_setup):
    orchestrator, store, gateway, event_logger, invalidator = orchestrator_setup
    purchase = orchestrator.initiate("u1", "m1")
    gateway.statuses[purchase.external_transaction_id] = GatewayStatus.SUCCEEDED
    workers = 10
    barrier = threading.Barrier(workers)
    results = []
    lock = threading.Lock()

    def attempt() -> None:
        barrier.wait()
        result = orchestrator.confirm(purchase.external_transaction_id)
        with lock:
            results.append(result)

    threads = [threading.Thread(target=attempt) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == workers
    assert all(r.outcome == ConfirmationOutcome.COMPLETED for r in results)
    assert len([r for r in results if not r.replayed]) == 1
    assert len(event_logger.of_type(PurchaseAuditEventType.COMPLETED)) == 1
    assert invalidator.calls == [("u1", "m1")]
    assert store.get(purchase.purchase_id).status == PurchaseStatus.COMPLETED


def test_concurrent_confirm_of_failure_raises_once(orchestrator_setup):
    orchestrator, _, gateway, _, _ = orchestrator_setup
    purchase = orchestrator.initiate("u1", "m1")
    gateway.statuses[purchase.external_transaction_id] = GatewayStatus.FAILED
    workers = 8
    barrier = threading.Barrier(workers)
    failures: List[Exception] = []
    replays = []
    lock = threading.Lock()

    def attempt() -> None:
        barrier.wait()
        try:
            result = orchestrator.confirm(purchase.external_transaction_id)
        except PaymentFailedError as exc:
            with lock:
                failures.append(exc)
        else:
            with lock:
                replays.append(result)

    threads = [threading.Thread(target=attempt) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(failures) == 1
    assert all(r.outcome == ConfirmationOutcome.PAYMENT_FAILED and r.replayed for r in replays)


def test_gateway_error_marks_placeholder_failed_and_frees_the_pair(orchestrator_setup):
    orchestrator, store, gateway, event_logger, _ = orchestrator_setup
    gateway.create_error = GatewayError("card declined", retryable=False)

    with pytest.raises(GatewayError) as exc_info:
        orchestrator.initiate("u1", "m1")

    assert exc_info.value.retryable is False
    [attempt] = store.list_for_user("u1")
    assert attempt.status == PurchaseStatus.FAILED
    assert attempt.external_transaction_id is None
    [event] = event_logger.of_type(PurchaseAuditEventType.GATEWAY_FAILED)
    assert event.metadata == {"retryable": "false"}

    gateway.create_error = None
    assert orchestrator.initiate("u1", "m1").status == PurchaseStatus.CREATED


def test_unexpected_gateway_exception_is_wrapped_as_retryable(orchestrator_setup):
    orchestrator, store, gateway, _, _ = orchestrator_setup
    gateway.create_error = TimeoutError("read timed out")

    with pytest.raises(GatewayError) as exc_info:
        orchestrator.initiate("u1", "m1")

    assert exc_info.value.retryable is True
    assert isinstance(exc_info.value.__cause__, TimeoutError)
    assert exc_info.value.to_http_exception().detail["retryable"] is True
    assert store.list_for_user("u1")[0].status == PurchaseStatus.FAILED


def test_expired_placeholder_is_not_resurrected_by_slow_gateway(orchestrator_setup):
    orchestrator, store, gateway, _, _ = orchestrator_setup
    started = threading.Event()
    release = threading.Event()
    original_create = gateway.create_transaction

    def slow_create(amount, currency, description):
        started.set()
        release.wait(timeout=5)
        return original_create(amount, currency, description)

    gateway.create_transaction = slow_create  # type: ignore[assignment]
    outcome: Dict[str, object] = {}

    def run() -> None:
        try:
            outcome["purchase"] = orchestrator.initiate("u1", "m1")
        except GatewayError as exc:
            outcome["error"] = exc

    worker = threading.Thread(target=run)
    worker.start()
    assert started.wait(timeout=5)
    expired = orchestrator.expire_stale_pending(now=datetime.now(timezone.utc) + timedelta(hours=1))
    release.set()
    worker.join()

    assert len(expired) == 1
    assert isinstance(outcome.get("error"), GatewayError)
    assert outcome["error"].retryable is True
    assert store.list_for_user("u1")[0].status == PurchaseStatus.FAILED


def test_expire_stale_pending_only_touches_old_placeholders(orchestrator_setup):
    orchestrator, store, _, event_logger, _ = orchestrator_setup
    now = datetime.now(timezone.utc)
    store.create_if_absent(
        Purchase(
            purchase_id="pur_stale",
            user_id="u1",
            material_id="m1",
            price_charged=Decimal("1500.00"),
            currency="usd",
            created_at=now - timedelta(minutes=30),
            updated_at=now - timedelta(minutes=30),
        )
    )
    fresh = orchestrator.initiate("u2", "m1")

    expired = orchestrator.expire_stale_pending(now=now)

    assert [p.purchase_id for p in expired] == ["pur_stale"]
    assert store.get("pur_stale").status == PurchaseStatus.FAILED
    assert store.get(fresh.purchase_id).status == PurchaseStatus.CREATED
    assert len(event_logger.of_type(PurchaseAuditEventType.EXPIRED)) == 1


def _seed_pending(store, purchase_id: str, age: timedelta) -> None:
    created = datetime.now(timezone.utc) - age
    store.create_if_absent(
        Purchase(
            purchase_id=purchase_id,
            user_id="u1",
            material_id="m1",
            price_charged=Decimal("1500.00"),
            currency="usd",
            created_at=created,
            updated_at=created,
        )
    )


def test_initiate_replaces_stale_pending_placeholder(orchestrator_setup):
    orchestrator, store, _, event_logger, _ = orchestrator_setup
    _seed_pending(store, "pur_abandoned", timedelta(minutes=30))

    purchase = orchestrator.initiate("u1", "m1")

    assert purchase.status == PurchaseStatus.CREATED
    assert purchase.purchase_id != "pur_abandoned"
    assert store.get("pur_abandoned").status == PurchaseStatus.FAILED
    [expired] = event_logger.of_type(PurchaseAuditEventType.EXPIRED)
    assert expired.purchase_id == "pur_abandoned"


def test_initiate_still_rejects_fresh_pending_placeholder(orchestrator_setup):
    orchestrator, store, gateway, event_logger, _ = orchestrator_setup
    _seed_pending(store, "pur_inflight", timedelta(minutes=1))

    with pytest.raises(AlreadyPendingError) as exc_info:
        orchestrator.initiate("u1", "m1")

    assert exc_info.value.detail == {"purchase_id": "pur_inflight", "status": "pending"}
    assert store.get("pur_inflight").status == PurchaseStatus.PENDING
    assert gateway.created == []
    assert event_logger.of_type(PurchaseAuditEventType.EXPIRED) == []


def test_refund_revokes_ownership(orchestrator_setup):
    orchestrator, _, gateway, event_logger, invalidator = orchestrator_setup
    purchase = orchestrator.initiate("u1", "m1")
    gateway.statuses[purchase.external_transaction_id] = GatewayStatus.SUCCEEDED
    orchestrator.confirm(purchase.external_transaction_id)

    refunded = orchestrator.refund(purchase.purchase_id)
    again = orchestrator.refund(purchase.purchase_id)

    assert refunded.status == again.status == PurchaseStatus.REFUNDED
    assert orchestrator.is_owned("u1", "m1") is False
    assert invalidator.calls == [("u1", "m1"), ("u1", "m1")]
    assert len(event_logger.of_type(PurchaseAuditEventType.REFUNDED)) == 1
    assert orchestrator.initiate("u1", "m1").status == PurchaseStatus.CREATED


def test_refund_requires_completed_purchase(orchestrator_setup):
    orchestrator, _, _, _, _ = orchestrator_setup
    purchase = orchestrator.initiate("u1", "m1")

    with pytest.raises(InconsistentStateError):
        orchestrator.refund(purchase.purchase_id)
    with pytest.raises(NotFoundError):
        orchestrator.refund("pur_missing")


def test_status_never_regresses_across_operations(orchestrator_setup):
    orchestrator, store, gateway, _, _ = orchestrator_setup
    order = [
        PurchaseStatus.PENDING,
        PurchaseStatus.CREATED,
        PurchaseStatus.PROCESSING,
        PurchaseStatus.COMPLETED,
        PurchaseStatus.REFUNDED,
    ]
    purchase = orchestrator.initiate("u1", "m1")
    tx = purchase.external_transaction_id
    observed = [store.get(purchase.purchase_id).status]

    for status in (
        GatewayStatus.PROCESSING,
        GatewayStatus.SUCCEEDED,
        GatewayStatus.PROCESSING,
        GatewayStatus.FAILED,
    ):
        gateway.statuses[tx] = status
        orchestrator.confirm(tx)
        observed.append(store.get(purchase.purchase_id).status)
    orchestrator.refund(purchase.purchase_id)
    observed.append(store.get(purchase.purchase_id).status)

    positions = [order.index(status) for status in observed]
    assert positions == sorted(positions)
    assert observed[-1] == PurchaseStatus.REFUNDED


def test_history_reads(orchestrator_setup):
    orchestrator, _, _, _, _ = orchestrator_setup
    first = orchestrator.initiate("u1", "m1")
    orchestrator.initiate("u1", "m2")
    orchestrator.initiate("u2", "m1")

    assert {p.material_id for p in orchestrator.list_user_purchases("u1")} == {"m1", "m2"}
    assert len(orchestrator.list_all_purchases()) == 3
    assert orchestrator.get_purchase(first.purchase_id) == first
    with pytest.raises(NotFoundError):
        orchestrator.get_purchase("pur_missing")
