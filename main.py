import logging
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from sqlalchemy.orm import Session

from database import SessionLocal
from models import Budget, Outflow, PeriodType, Transaction
from periods import current_period
from reassignment import BudgetReassignmentService
from scheduler import SchedulerManager
from schemas import (
    AssignSplitIn,
    AssignSplitOut,
    BudgetIn,
    BudgetUpdate,
    CategoryChangesIn,
    CategoryIn,
    OutflowIn,
    ReassignForBudgetOut,
    ReassignFromDeletedOut,
    RecalculateIn,
    RecalculateOut,
    TransactionIn,
    TransactionUpdate,
    UnassignSplitIn,
)
from services import (
    BudgetService,
    CategoryService,
    OutflowService,
    TransactionService,
    VerificationService,
    get_current_user_id,
)
from summaries import SummaryService

logger = logging.getLogger(__name__)

app = FastAPI(title="SpendSync")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _http_error(exc: ValueError) -> HTTPException:
    status = 404 if "not found" in str(exc).lower() else 400
    return HTTPException(status_code=status, detail=str(exc))


def transaction_out(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "transaction_date": txn.transaction_date.isoformat(),
        "type": txn.type.value,
        "status": txn.status.value,
        "amount_cents": txn.amount_cents,
        "description": txn.description,
        "group_id": txn.group_id,
        "version": txn.version,
        "splits": [
            {
                "id": split.id,
                "amount_cents": split.amount_cents,
                "category_id": split.category_id,
                "budget_id": split.budget_id,
                "outflow_id": split.outflow_id,
                "payment_type": split.payment_type.value if split.payment_type else None,
            }
            for split in txn.splits
        ],
    }


def budget_out(budget: Budget) -> dict:
    return {
        "id": budget.id,
        "name": budget.name,
        "amount_cents": budget.amount_cents,
        "period_type": budget.period_type.value,
        "category_ids": sorted(budget.category_ids),
        "start_at": budget.start_at.isoformat(),
        "end_at": budget.end_at.isoformat() if budget.end_at else None,
        "is_active": budget.is_active,
        "is_system_everything_else": budget.is_system_everything_else,
    }


def outflow_out(outflow: Outflow) -> dict:
    return {
        "id": outflow.id,
        "description": outflow.description,
        "amount_cents": outflow.amount_cents,
        "anchor_date": outflow.anchor_date.isoformat(),
        "interval_unit": outflow.interval_unit.value,
        "interval_count": outflow.interval_count,
        "is_active": outflow.is_active,
    }


@app.get("/api/categories")
def api_categories(db: Session = Depends(get_db)):
    return [
        {"id": c.id, "name": c.name, "parent_id": c.parent_id}
        for c in CategoryService(db).list_all()
    ]


@app.post("/api/categories", status_code=201)
def api_create_category(payload: CategoryIn, db: Session = Depends(get_db)):
    try:
        category = CategoryService(db).create(payload)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {"id": category.id, "name": category.name, "parent_id": category.parent_id}


@app.post("/api/transactions", status_code=201)
def api_create_transaction(payload: TransactionIn, db: Session = Depends(get_db)):
    try:
        txn = TransactionService(db).create(payload)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return transaction_out(txn)


@app.get("/api/transactions/{transaction_id}")
def api_get_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        return transaction_out(TransactionService(db).get(transaction_id))
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.patch("/api/transactions/{transaction_id}")
def api_update_transaction(
    transaction_id: int, payload: TransactionUpdate, db: Session = Depends(get_db)
):
    try:
        txn = TransactionService(db).update(transaction_id, payload)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return transaction_out(txn)


@app.delete("/api/transactions/{transaction_id}")
def api_delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        TransactionService(db).delete(transaction_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/budgets")
def api_budgets(db: Session = Depends(get_db)):
    return [budget_out(b) for b in BudgetService(db).list_active()]


@app.post("/api/budgets", status_code=201)
def api_create_budget(payload: BudgetIn, db: Session = Depends(get_db)):
    try:
        budget = BudgetService(db).create(payload)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return budget_out(budget)


@app.patch("/api/budgets/{budget_id}")
def api_update_budget(
    budget_id: int, payload: BudgetUpdate, db: Session = Depends(get_db)
):
    try:
        budget = BudgetService(db).update(budget_id, payload)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return budget_out(budget)


@app.delete("/api/budgets/{budget_id}")
def api_delete_budget(budget_id: int, db: Session = Depends(get_db)):
    try:
        BudgetService(db).delete(budget_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@app.post("/api/budgets/{budget_id}/reassign", response_model=ReassignForBudgetOut)
def api_reassign_budget(
    budget_id: int, payload: CategoryChangesIn, db: Session = Depends(get_db)
):
    try:
        return BudgetReassignmentService(
            db, get_current_user_id()
        ).reassign_transactions_for_budget(
            budget_id, payload.categories_added, payload.categories_removed
        )
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post(
    "/api/budgets/{budget_id}/reassign-from-deleted",
    response_model=ReassignFromDeletedOut,
)
def api_reassign_from_deleted(budget_id: int, db: Session = Depends(get_db)):
    try:
        return BudgetReassignmentService(
            db, get_current_user_id()
        ).reassign_transactions_from_deleted_budget(budget_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post("/api/budgets/{budget_id}/recalculate", response_model=RecalculateOut)
def api_recalculate_budget(
    budget_id: int, payload: RecalculateIn, db: Session = Depends(get_db)
):
    try:
        return BudgetReassignmentService(
            db, get_current_user_id()
        ).recalculate_historical_transactions(
            budget_id, payload.category_ids, payload.start_at, payload.end_at
        )
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.get("/api/outflows")
def api_outflows(db: Session = Depends(get_db)):
    return [outflow_out(o) for o in OutflowService(db).list_active()]


@app.post("/api/outflows", status_code=201)
def api_create_outflow(payload: OutflowIn, db: Session = Depends(get_db)):
    try:
        outflow = OutflowService(db).create(payload)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return outflow_out(outflow)


@app.post("/api/outflows/assign-split", response_model=AssignSplitOut)
def api_assign_split(payload: AssignSplitIn, db: Session = Depends(get_db)):
    try:
        return OutflowService(db).assign_split(payload)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post("/api/outflows/unassign-split", response_model=AssignSplitOut)
def api_unassign_split(payload: UnassignSplitIn, db: Session = Depends(get_db)):
    try:
        return OutflowService(db).unassign_split(payload)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.get("/api/periods/current")
def api_current_period(request: Request, db: Session = Depends(get_db)):
    period_type = request.query_params.get("type", PeriodType.monthly.value)
    try:
        period = current_period(db, PeriodType(period_type))
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {
        "id": period.id,
        "type": period.type.value,
        "start_at": period.start_at.isoformat(),
        "end_at": period.end_at.isoformat(),
    }


@app.get("/api/summaries/{source_period_id}")
def api_user_summary(source_period_id: str, db: Session = Depends(get_db)):
    summary = SummaryService(db).get_user_summary(get_current_user_id(), source_period_id)
    if summary is None:
        raise HTTPException(status_code=404, detail="Summary not found")
    return summary


@app.get("/api/groups/{group_id}/summaries/{source_period_id}")
def api_group_summary(
    group_id: int, source_period_id: str, db: Session = Depends(get_db)
):
    summary = SummaryService(db).get_group_summary(group_id, source_period_id)
    if summary is None:
        raise HTTPException(status_code=404, detail="Summary not found")
    return summary


@app.post("/api/maintenance/rebuild-summaries")
def api_rebuild_summaries(db: Session = Depends(get_db)):
    rebuilt = SummaryService(db).rebuild_all(get_current_user_id())
    return {"rebuilt": rebuilt, "at": datetime.utcnow().isoformat()}


@app.get("/api/maintenance/verify")
def api_verify(db: Session = Depends(get_db)):
    report = VerificationService(db).verify()
    return {"ok": report.ok, **report.model_dump()}


@app.post("/api/maintenance/repair")
def api_repair(repair_outflows: Optional[bool] = True, db: Session = Depends(get_db)):
    service = VerificationService(db)
    outflow_periods = service.repair_outflow_periods() if repair_outflows else 0
    transactions = service.repair_budget_spending()
    logger.info(
        f"maintenance_repair: transactions={transactions} outflow_periods={outflow_periods}"
    )
    return {"transactions": transactions, "outflow_periods": outflow_periods}
