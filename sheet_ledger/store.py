"""Persistence collaborators: the bulk-create / find-all contract and two clients."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Protocol, Sequence

import requests

from sheet_ledger.ledger_modules.normalization import normalize_amount, normalize_date
from sheet_ledger.ledger_modules.shared import DEFAULT_CATEGORY, NormalizedRecord
from sheet_ledger.logging_setup import get_logger

log = get_logger(__name__)

RESOURCES = ("incomes", "expenses", "loans")
API_URL_ENV = "SHEET_LEDGER_API_URL"
API_TOKEN_ENV = "SHEET_LEDGER_API_TOKEN"
DEFAULT_TIMEOUT = 60


class StoreError(Exception):
    """The persistence collaborator could not be reached or answered nonsense."""


@dataclass(frozen=True)
class BulkCreateResult:
    imported: int
    failed: int
    errors: tuple[tuple[int, str], ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "imported": self.imported,
            "failed": self.failed,
            "errors": [{"index": index, "error": message} for index, message in self.errors],
        }


class TransactionStore(Protocol):
    def bulk_create(self, records: Sequence[NormalizedRecord]) -> BulkCreateResult:
        ...

    def find_all(self) -> list[NormalizedRecord]:
        ...


def record_to_wire(record: NormalizedRecord) -> dict[str, Any]:
    amount = record.amount
    return {
        "trans_date": record.trans_date.isoformat(),
        "category": record.category,
        "description": record.description,
        "amount": int(amount) if amount == amount.to_integral_value() else str(amount),
    }


def _wire_amount(value: Any) -> Decimal:
    if isinstance(value, (int, float)):
        return normalize_amount(value)
    try:
        return normalize_amount(Decimal(str(value or 0)))
    except InvalidOperation as exc:
        raise ValueError(f"Record amount is not a number: {value!r}") from exc


def record_from_wire(item: dict[str, Any]) -> NormalizedRecord:
    trans_date = normalize_date(item.get("trans_date"))
    if trans_date is None:
        raise ValueError(f"Record has no readable trans_date: {item.get('trans_date')!r}")
    return NormalizedRecord(
        trans_date=trans_date,
        category=str(item.get("category") or DEFAULT_CATEGORY),
        description=str(item.get("description") or ""),
        amount=_wire_amount(item.get("amount")),
    )


@dataclass
class InMemoryStore:
    """List-backed store. ``reject`` holds indexes whose create should fail."""

    records: list[NormalizedRecord] = field(default_factory=list)
    reject: set[int] = field(default_factory=set)

    def bulk_create(self, records: Sequence[NormalizedRecord]) -> BulkCreateResult:
        errors = []
        for index, record in enumerate(records):
            if index in self.reject:
                errors.append((index, f"record {index} rejected"))
                continue
            self.records.append(record)
        return BulkCreateResult(len(records) - len(errors), len(errors), tuple(errors))

    def find_all(self) -> list[NormalizedRecord]:
        return list(self.records)


class HttpTransactionStore:
    """Client for the REST API: ``POST /{resource}/bulk`` and ``GET /{resource}``."""

    def __init__(
        self,
        base_url: str,
        *,
        resource: str = "incomes",
        token: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        if resource not in RESOURCES:
            raise ValueError(f"Unknown resource '{resource}'. Supported: {', '.join(RESOURCES)}")
        if not base_url:
            raise ValueError("An API base URL is required")
        self.base_url = base_url.rstrip("/")
        self.resource = resource
        self.timeout = timeout
        self.session = session or requests.Session()
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    @classmethod
    def from_env(cls, resource: str = "incomes", **kwargs: Any) -> "HttpTransactionStore":
        base_url = kwargs.pop("base_url", None) or os.environ.get(API_URL_ENV)
        token = kwargs.pop("token", None) or os.environ.get(API_TOKEN_ENV)
        if not base_url:
            raise ValueError(f"No API URL given; pass --api-url or set {API_URL_ENV}")
        return cls(base_url, resource=resource, token=token, **kwargs)

    @property
    def url(self) -> str:
        return f"{self.base_url}/{self.resource}"

    def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as exc:
            raise StoreError(f"{method} {url} failed: {exc}") from exc
        except ValueError as exc:
            raise StoreError(f"{method} {url} returned invalid JSON: {exc}") from exc

    def bulk_create(self, records: Sequence[NormalizedRecord]) -> BulkCreateResult:
        url = f"{self.url}/bulk"
        log.info("Sending %d record(s) to %s", len(records), url)
        body = self._request("POST", url, json={"items": [record_to_wire(r) for r in records]})
        if isinstance(body, dict) and isinstance(body.get("data"), dict):
            body = body["data"]
        if not isinstance(body, dict) or "imported" not in body:
            raise StoreError(f"POST {url} returned an unexpected body")
        errors = tuple(
            (int(item.get("index", -1)), str(item.get("error", "unknown error")))
            for item in body.get("errors") or []
        )
        imported = int(body.get("imported") or 0)
        failed = int(body.get("failed", len(errors)) or 0)
        return BulkCreateResult(imported, failed, errors)

    def find_all(self) -> list[NormalizedRecord]:
        body = self._request("GET", self.url)
        if isinstance(body, dict):
            body = body.get("data")
        if not isinstance(body, list):
            raise StoreError(f"GET {self.url} returned an unexpected body")
        records = []
        for item in body:
            try:
                records.append(record_from_wire(item))
            except (ValueError, AttributeError) as exc:
                log.warning("Skipping unreadable %s record: %s", self.resource, exc)
        return records


def records_from_json(items: list[dict[str, Any]]) -> list[NormalizedRecord]:
    """Records from a JSON dump shaped like the ``GET /{resource}`` response."""
    return [record_from_wire(item) for item in items]

