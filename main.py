import json
import logging
import sys
import threading
from datetime import datetime, timezone
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from alerts import AlertTrigger, MonthlyReporter
from config import get_settings
from controller import SessionController
from database import SessionLocal, close_db, init_db
from models import (
    BUDGET_CATEGORIES,
    Budget,
    Category,
    Goal,
    GoalStatus,
    Transaction,
    TransactionSource,
    TransactionType,
)
from oracle import ExtractionOracle
from scheduler import SchedulerManager
from schemas import (
    BudgetIn,
    GoalIn,
    GoalProgressIn,
    GoalUpdate,
    TransactionIn,
    TransactionUpdate,
)
from services import (
    BudgetComparison,
    BudgetService,
    GoalService,
    NotFoundError,
    PeriodStats,
    StatsService,
    TransactionFilters,
    TransactionService,
    cents_to_units,
)
from periods import Window, resolve_window
from transport import WebBridgeTransport, build_transport

logger = logging.getLogger(__name__)

app = FastAPI(title="Bought")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().allowed_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


transport = build_transport()
oracle = ExtractionOracle()
alert_trigger = AlertTrigger(transport)
controller = SessionController(transport, oracle, SessionLocal, alerts=alert_trigger)
scheduler_manager = SchedulerManager(alert_trigger, MonthlyReporter(transport, oracle))

_shutdown_lock = threading.Lock()
_shut_down = False


def get_controller() -> SessionController:
    return controller


def shutdown() -> None:
    """Stop taking messages, then release the scheduler, transport and database."""
    global _shut_down
    with _shutdown_lock:
        if _shut_down:
            return
        _shut_down = True
    logger.info("shutdown: starting")
    controller.stop()
    scheduler_manager.stop()
    controller.transport.close()
    close_db()
    logger.info("shutdown: complete")


def install_crash_handlers() -> None:
    previous_hook = sys.excepthook

    def _excepthook(exc_type, exc, tb):
        logger.critical("uncaught_exception", exc_info=(exc_type, exc, tb))
        shutdown()
        previous_hook(exc_type, exc, tb)

    def _thread_excepthook(args):
        logger.critical(
            f"uncaught_thread_exception: thread={args.thread.name if args.thread else None}",
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
        )
        shutdown()

    sys.excepthook = _excepthook
    threading.excepthook = _thread_excepthook


@app.on_event("startup")
def startup_event():
    init_db()
    install_crash_handlers()
    scheduler_manager.start()
    logger.info(f"startup: transport={controller.transport.name}")


@app.on_event("shutdown")
def shutdown_event():
    shutdown()


@app.exception_handler(StarletteHTTPException)
def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": str(exc.detail)},
    )


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "message": err.get("msg", ""),
        }
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "Validation failed", "details": details},
    )


@app.exception_handler(Exception)
def unexpected_exception_handler(request: Request, exc: Exception):
    logger.exception(f"request_failed: {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500, content={"success": False, "error": "Internal server error"}
    )


def ok(data, **extra) -> dict:
    body = {"success": True, "data": data}
    body.update(extra)
    return body


def _units(cents: Optional[int]) -> Optional[float]:
    return cents_to_units(cents) if cents is not None else None


def transaction_out(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "userId": txn.owner_id,
        "amount": cents_to_units(txn.amount_cents),
        "type": txn.type.value,
        "category": txn.category.value,
        "description": txn.description,
        "date": txn.occurred_at.isoformat(),
        "source": txn.source.value,
        "createdAt": txn.created_at.isoformat() if txn.created_at else None,
    }


def goal_out(goal: Goal) -> dict:
    return {
        "id": goal.id,
        "userId": goal.owner_id,
        "title": goal.title,
        "description": goal.description,
        "targetAmount": cents_to_units(goal.target_cents),
        "currentAmount": cents_to_units(goal.current_cents),
        "deadline": goal.deadline.isoformat() if goal.deadline else None,
        "category": goal.category.value,
        "status": goal.status.value,
        "completedAt": goal.completed_at.isoformat() if goal.completed_at else None,
        "weeklyTarget": _units(goal.weekly_target_cents),
        "monthlyTarget": _units(goal.monthly_target_cents),
        "progressPercentage": goal.progress_percentage,
        "createdAt": goal.created_at.isoformat() if goal.created_at else None,
    }


def budget_out(budget: Budget) -> dict:
    return {
        "id": budget.id,
        "userId": budget.owner_id,
        "categories": {
            category.value: cents_to_units(budget.limit_for(category))
            for category in BUDGET_CATEGORIES
        },
        "total": cents_to_units(budget.total_cents()),
        "setupCompleted": budget.setup_completed,
        "setupStep": budget.setup_step,
    }


def comparison_out(comparison: BudgetComparison) -> dict:
    return {
        "categories": [
            {
                "category": line.category.value,
                "budget": cents_to_units(line.budget_cents),
                "spent": cents_to_units(line.spent_cents),
                "remaining": cents_to_units(line.remaining_cents),
                "percentage": line.percentage,
                "overBudget": line.over_budget,
            }
            for line in comparison.lines
        ],
        "totals": {
            "budget": cents_to_units(comparison.total_budget_cents),
            "spent": cents_to_units(comparison.total_spent_cents),
            "saved": cents_to_units(comparison.total_saved_cents),
            "percentage": comparison.overall_percentage,
        },
        "savedMoney": comparison.saved_money,
    }


def stats_out(stats: PeriodStats, window: Window) -> dict:
    return {
        "period": window.slug,
        "start": window.start.isoformat(),
        "end": window.end.isoformat(),
        "income": cents_to_units(stats.income_cents),
        "expense": cents_to_units(stats.expense_cents),
        "balance": cents_to_units(stats.balance_cents),
        "count": stats.count,
    }


@app.get("/api/health")
def health():
    return {
        "success": True,
        "status": "OK",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/api/transactions")
def list_transactions(
    limit: int = Query(default=50, ge=1, le=500),
    skip: int = Query(default=0, ge=0),
    type: Optional[TransactionType] = None,
    category: Optional[Category] = None,
    user_id: Optional[str] = Query(default=None, alias="userId"),
    db: Session = Depends(get_db),
):
    items, total = TransactionService(db, user_id).list(
        TransactionFilters(type=type, category=category), limit=limit, skip=skip
    )
    return ok(
        [transaction_out(txn) for txn in items],
        pagination={"total": total, "limit": limit, "skip": skip},
    )


@app.get("/api/transactions/{transaction_id}")
def get_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        txn = TransactionService(db).get(transaction_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return ok(transaction_out(txn))


@app.post("/api/transactions", status_code=201)
def create_transaction(data: TransactionIn, db: Session = Depends(get_db)):
    data.source = TransactionSource.api
    try:
        txn = TransactionService(db).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ok(transaction_out(txn))


@app.put("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int, data: TransactionUpdate, db: Session = Depends(get_db)
):
    try:
        txn = TransactionService(db).update(transaction_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ok(transaction_out(txn))


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        TransactionService(db).delete(transaction_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return ok({"id": transaction_id}, message="Transaction deleted")


def _stats_response(kind: str, user_id: Optional[str], db: Session) -> dict:
    window = resolve_window(kind)
    stats = StatsService(db, user_id).for_window(window)
    return ok(stats_out(stats, window))


@app.get("/api/stats/daily")
def stats_daily(
    user_id: Optional[str] = Query(default=None, alias="userId"),
    db: Session = Depends(get_db),
):
    return _stats_response("day", user_id, db)


@app.get("/api/stats/weekly")
def stats_weekly(
    user_id: Optional[str] = Query(default=None, alias="userId"),
    db: Session = Depends(get_db),
):
    return _stats_response("week", user_id, db)


@app.get("/api/stats/monthly")
def stats_monthly(
    user_id: Optional[str] = Query(default=None, alias="userId"),
    db: Session = Depends(get_db),
):
    return _stats_response("month", user_id, db)


@app.get("/api/stats/categories")
def stats_categories(
    user_id: Optional[str] = Query(default=None, alias="userId"),
    db: Session = Depends(get_db),
):
    totals = StatsService(db, user_id).categories()
    return ok(
        [
            {
                "category": row.category.value,
                "total": cents_to_units(row.total_cents),
                "count": row.count,
            }
            for row in totals
        ]
    )


@app.get("/api/budget")
def get_budget(
    user_id: Optional[str] = Query(default=None, alias="userId"),
    db: Session = Depends(get_db),
):
    budget = BudgetService(db, user_id).get()
    if budget is None:
        return ok(None, message="No budget found")
    return ok(budget_out(budget))


@app.put("/api/budget")
def update_budget(data: BudgetIn, db: Session = Depends(get_db)):
    try:
        budget = BudgetService(db).update(data)
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ok(budget_out(budget))


@app.get("/api/budget/compare")
def compare_budget(
    user_id: Optional[str] = Query(default=None, alias="userId"),
    db: Session = Depends(get_db),
):
    budget = BudgetService(db, user_id).get()
    comparison = StatsService(db, budget.owner_id if budget else user_id).budget_comparison(
        budget
    )
    if comparison is None:
        return ok(None, message="No completed budget found")
    return ok(comparison_out(comparison))


@app.get("/api/goals")
def list_goals(
    user_id: Optional[str] = Query(default=None, alias="userId"),
    status: Optional[GoalStatus] = None,
    db: Session = Depends(get_db),
):
    if not user_id:
        raise HTTPException(status_code=400, detail="userId is required")
    goals = GoalService(db, user_id).list(status)
    return ok([goal_out(goal) for goal in goals])


@app.post("/api/goals", status_code=201)
def create_goal(data: GoalIn, db: Session = Depends(get_db)):
    try:
        goal = GoalService(db).create(data)
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ok(goal_out(goal))


@app.get("/api/goals/{goal_id}")
def get_goal(goal_id: int, db: Session = Depends(get_db)):
    try:
        goal = GoalService(db).get(goal_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return ok(goal_out(goal))


@app.put("/api/goals/{goal_id}")
def update_goal(goal_id: int, data: GoalUpdate, db: Session = Depends(get_db)):
    try:
        goal = GoalService(db).update(goal_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ok(goal_out(goal))


@app.delete("/api/goals/{goal_id}")
def delete_goal(goal_id: int, db: Session = Depends(get_db)):
    try:
        GoalService(db).delete(goal_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return ok({"id": goal_id}, message="Goal deleted")


@app.post("/api/goals/{goal_id}/progress")
def add_goal_progress(
    goal_id: int, data: GoalProgressIn, db: Session = Depends(get_db)
):
    try:
        goal = GoalService(db).add_progress(goal_id, data.amount)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ok(goal_out(goal))


@app.get("/api/goals/{goal_id}/summary")
def goal_progress_summary(goal_id: int, db: Session = Depends(get_db)):
    try:
        summary = GoalService(db).summary(goal_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return ok(summary)


@app.get("/webhook")
def webhook_verify(
    mode: Optional[str] = Query(default=None, alias="hub.mode"),
    token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
    ctl: SessionController = Depends(get_controller),
):
    echoed = ctl.transport.verify_handshake(mode, token, challenge)
    if echoed is None:
        logger.warning("webhook_verification_failed")
        raise HTTPException(status_code=403, detail="Verification failed")
    logger.info("webhook_verified")
    return PlainTextResponse(echoed)


def _enqueue(
    ctl: SessionController, payload: object, background_tasks: BackgroundTasks
) -> int:
    if not isinstance(payload, dict):
        return 0
    try:
        messages = ctl.transport.parse_inbound(payload)
    except Exception:
        logger.exception("inbound_parse_failed")
        return 0
    for message in messages:
        background_tasks.add_task(ctl.handle, message)
    return len(messages)


async def _read_json(request: Request) -> object:
    body = await request.body()
    try:
        return json.loads(body or b"{}")
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.warning("inbound_malformed_body")
        return None


@app.post("/webhook")
async def webhook_receive(
    request: Request,
    background_tasks: BackgroundTasks,
    ctl: SessionController = Depends(get_controller),
):
    payload = await _read_json(request)
    queued = _enqueue(ctl, payload, background_tasks)
    return {"status": "received", "queued": queued}


@app.post("/bridge/messages")
async def bridge_receive(
    request: Request,
    background_tasks: BackgroundTasks,
    ctl: SessionController = Depends(get_controller),
):
    if not isinstance(ctl.transport, WebBridgeTransport):
        raise HTTPException(status_code=404, detail="Bridge transport is not enabled")
    if not ctl.transport.verify_token(request.headers.get("X-Bridge-Token")):
        raise HTTPException(status_code=403, detail="Invalid bridge token")
    payload = await _read_json(request)
    queued = _enqueue(ctl, payload, background_tasks)
    return {"status": "received", "queued": queued}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=3001, reload=False)


if __name__ == "__main__":
    main()
