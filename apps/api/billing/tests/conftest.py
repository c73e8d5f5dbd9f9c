from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import pytest

from apps.api.billing import repo
from apps.api.billing.emailer import EmailResult
from apps.api.billing.models import InvoiceCreateRequest, LineItemInput, OfferCreateRequest


@dataclass
class _Snap:
    id: str
    _data: Optional[Dict[str, Any]]

    @property
    def exists(self) -> bool:
        return self._data is not None

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._data or {})


class _DocRef:
    def __init__(self, col: "_Collection", doc_id: str):
        self._col = col
        self.id = doc_id

    def get(self, transaction=None):
        _ = transaction
        return _Snap(self.id, self._col._docs.get(self.id))

    def set(self, data: Dict[str, Any], merge: bool = False):
        if not merge or self.id not in self._col._docs:
            self._col._docs[self.id] = dict(data)
            return
        merged = dict(self._col._docs[self.id])
        merged.update(dict(data))
        self._col._docs[self.id] = merged


class _Query:
    def __init__(self, col: "_Collection", filters: List[Tuple[str, str, Any]]):
        self._col = col
        self._filters = filters
        self._limit: Optional[int] = None

    def where(self, field: str, op: str, value: Any):
        return _Query(self._col, [*self._filters, (field, op, value)])

    def limit(self, n: int):
        self._limit = int(n)
        return self

    def stream(self) -> Iterable[_Snap]:
        out: List[_Snap] = []
        for doc_id, data in list(self._col._docs.items()):
            if self._matches(data):
                out.append(_Snap(doc_id, data))
        if self._limit is not None:
            out = out[: self._limit]
        return out

    def _matches(self, data: Dict[str, Any]) -> bool:
        for field, op, value in self._filters:
            if op != "==":
                raise AssertionError(f"Unsupported op in fake db: {op}")
            if data.get(field) != value:
                return False
        return True


class _Collection(_Query):
    def __init__(self, docs: Dict[str, Dict[str, Any]]):
        self._docs = docs
        super().__init__(self, [])

    def document(self, doc_id: str) -> _DocRef:
        return _DocRef(self, doc_id)


class _FakeDB:
    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def collection(self, name: str) -> _Collection:
        docs = self._collections.setdefault(name, {})
        return _Collection(docs)

    def docs(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(name, {})


class _RecordingSender:
    def __init__(self):
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []
        self.fail = False

    def send(self, to: str, template: str, params: Dict[str, Any]) -> EmailResult:
        self.sent.append((to, template, dict(params)))
        if self.fail:
            return EmailResult(ok=False, error="smtp down")
        return EmailResult(ok=True)


@pytest.fixture()
def fake_db(monkeypatch):
    db = _FakeDB()
    monkeypatch.setattr(repo, "db", db)
    db.collection(repo.PROFILES).document("owner1").set(
        {"business_name": "Acme Studio", "default_currency": "GBP", "subscription_status": "active"}
    )
    return db


@pytest.fixture()
def sender():
    return _RecordingSender()


@pytest.fixture()
def invoice_request() -> Callable[..., InvoiceCreateRequest]:
    def _make(**overrides) -> InvoiceCreateRequest:
        data: Dict[str, Any] = {
            "client_name": "Jane Client",
            "client_email": "jane@example.com",
            "currency": "USD",
            "line_items": [
                LineItemInput(description="Design", amount_minor_units=10000),
                LineItemInput(description="Hosting", amount_minor_units=5000, discount_percent=10),
            ],
        }
        data.update(overrides)
        return InvoiceCreateRequest(**data)

    return _make


@pytest.fixture()
def offer_request() -> Callable[..., OfferCreateRequest]:
    def _make(**overrides) -> OfferCreateRequest:
        data: Dict[str, Any] = {
            "client_name": "Jane Client",
            "client_email": "jane@example.com",
            "currency": "EUR",
            "discount_type": "percent",
            "discount_value": 5,
            "payment_processing_fee_included": True,
            "line_items": [
                LineItemInput(description="Workshop", amount_minor_units=33333, discount_percent=12.5),
                LineItemInput(description="Travel", amount_minor_units=4999),
            ],
        }
        data.update(overrides)
        return OfferCreateRequest(**data)

    return _make
