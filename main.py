import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import Response
from sqlalchemy.orm import Session

from aggregation import summarize
from config import get_settings
from database import SessionLocal, init_db
from errors import (
    ConcurrentEditError,
    StoreReadFailure,
    StoreWriteFailure,
    TransactionNotFound,
)
from models import Direction
from periods import Period, resolve_period
from recurrence import local_today
from schemas import (
    ReconciliationRequest,
    TransactionEditIn,
    TransactionTemplate,
    TransactionTypeIn,
)
from services import (
    ReconciliationService,
    TransactionService,
    TransactionTypeService,
)
from store import SqlTransactionStore


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Tracker")

STORE_ERRORS = (ValueError, StoreWriteFailure, StoreReadFailure)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_store(db: Session = Depends(get_db)) -> SqlTransactionStore:
    return SqlTransactionStore(db)


@app.on_event("startup")
def startup_event():
    init_db()
    logger.info("Database ready")


def http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, TransactionNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConcurrentEditError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (StoreWriteFailure, StoreReadFailure)):
        logger.error(f"store_error: {exc}")
        return HTTPException(status_code=502, detail="Storage operation failed")
    return HTTPException(status_code=400, detail=str(exc))


def period_from_request(request: Request) -> Period:
    period_slug = request.query_params.get("period")
    start = request.query_params.get("start")
    end = request.query_params.get("end")
    try:
        return resolve_period(period_slug, start, end, today=local_today())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/transactions")
def api_transactions(store: SqlTransactionStore = Depends(get_store)):
    try:
        items = TransactionService(store).list()
    except STORE_ERRORS as exc:
        raise http_error(exc) from exc
    return {"items": [txn.model_dump(mode="json") for txn in items]}


@app.post("/api/transactions", status_code=201)
def create_transaction(
    data: TransactionTemplate, store: SqlTransactionStore = Depends(get_store)
):
    try:
        created = TransactionService(store).create(data)
    except STORE_ERRORS as exc:
        raise http_error(exc) from exc
    return {"items": [txn.model_dump(mode="json") for txn in created]}


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int, store: SqlTransactionStore = Depends(get_store)
):
    try:
        txn = TransactionService(store).get(transaction_id)
    except STORE_ERRORS as exc:
        raise http_error(exc) from exc
    return txn.model_dump(mode="json")


@app.get("/api/transactions/{transaction_id}/series")
def transaction_series(
    transaction_id: int, store: SqlTransactionStore = Depends(get_store)
):
    service = TransactionService(store)
    try:
        txn = service.get(transaction_id)
        items = service.series(txn.series_key) if txn.is_repeating else [txn]
    except STORE_ERRORS as exc:
        raise http_error(exc) from exc
    return {"items": [item.model_dump(mode="json") for item in items]}


@app.put("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    data: TransactionEditIn,
    store: SqlTransactionStore = Depends(get_store),
):
    try:
        original = TransactionService(store).get(transaction_id)
        request = ReconciliationRequest(
            original=original,
            edited=TransactionTemplate(**data.model_dump(exclude={"expected_version"})),
            expected_version=data.expected_version,
        )
        result = ReconciliationService(store).reconcile(request)
    except STORE_ERRORS as exc:
        raise http_error(exc) from exc
    return result.model_dump()


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int, store: SqlTransactionStore = Depends(get_store)
):
    try:
        TransactionService(store).delete(transaction_id)
    except STORE_ERRORS as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/summary")
def api_summary(request: Request, store: SqlTransactionStore = Depends(get_store)):
    period = period_from_request(request)
    try:
        items = TransactionService(store).list()
    except STORE_ERRORS as exc:
        raise http_error(exc) from exc
    summary = summarize(items, period)
    return {
        "period": period.slug,
        "start": period.start.isoformat(),
        "end": period.end.isoformat(),
        **summary.model_dump(mode="json"),
    }


@app.get("/api/transaction-types")
def list_transaction_types(
    direction: Optional[Direction] = None,
    store: SqlTransactionStore = Depends(get_store),
):
    service = TransactionTypeService(store)
    try:
        items = service.options_for(direction) if direction else service.list_all()
    except STORE_ERRORS as exc:
        raise http_error(exc) from exc
    return {"items": [item.model_dump(mode="json") for item in items]}


@app.post("/api/transaction-types", status_code=201)
def create_transaction_type(
    data: TransactionTypeIn, store: SqlTransactionStore = Depends(get_store)
):
    try:
        created = TransactionTypeService(store).create(data)
    except STORE_ERRORS as exc:
        raise http_error(exc) from exc
    return created.model_dump(mode="json")


@app.put("/api/transaction-types/{type_id}")
def update_transaction_type(
    type_id: int,
    data: TransactionTypeIn,
    store: SqlTransactionStore = Depends(get_store),
):
    try:
        updated = TransactionTypeService(store).update(type_id, data)
    except STORE_ERRORS as exc:
        raise http_error(exc) from exc
    return updated.model_dump(mode="json")


@app.delete("/api/transaction-types/{type_id}", status_code=204)
def delete_transaction_type(
    type_id: int, store: SqlTransactionStore = Depends(get_store)
):
    try:
        TransactionTypeService(store).delete(type_id)
    except STORE_ERRORS as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
