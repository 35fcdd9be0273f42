import hmac
from dataclasses import asdict
from typing import Optional
from fastapi import APIRouter, BackgroundTasks, Body, Header, HTTPException
from .schemas import (
    ComplianceCheckRequest,
    HoldingUpsert,
    PositionCreate,
    RefreshQueued,
    SignalResponse,
    TargetsReplace,
)
from ..config import settings
from ..db import get_conn
from ..portfolio.compliance import check_account_compliance, check_position_compliance, validate_target_risk
from ..portfolio.models import InvalidAccountType, SignalValidationError
from ..portfolio.reconcile import reconcile_account
from ..portfolio.storage import SqliteHoldingRegistry, add_position, get_account, replace_target_allocations
from ..services.telegram import telegram_from_settings
from ..signals.processor import dismiss_all_pending, dismiss_signal, process_signal
from ..signals.reports import TelegramReportSink, format_signal_summary_html
from ..signals.scheduler import run_price_refresh_sync
from ..signals.storage import complete_task, get_task, list_signals, list_tasks

router = APIRouter()

def _load_account(conn, account_type: str, account_id: str):
    try:
        account = get_account(conn, account_id, account_type)
    except InvalidAccountType as e:
        raise HTTPException(400, str(e))
    if account is None:
        raise HTTPException(404, 'account not found')
    return account

@router.get(
    '/health',
    summary="Health check",
    description="Returns service and DB connectivity.",
    tags=["Health"],
)
def health():
    try:
        conn = get_conn(settings.db_path)
        conn.execute("SELECT 1").fetchone()
        return {'ok': True, 'db': 'ok'}
    except Exception as e:
        raise HTTPException(503, f'db_error: {e}')

@router.get(
    '/accounts/{account_type}/{account_id}/reconciliation',
    summary="Actual vs target",
    description="Per-ticker comparison of actual and target allocation with suggested trades.",
    tags=["Accounts"],
)
def account_reconciliation(account_type: str, account_id: str):
    conn = get_conn(settings.db_path)
    account = _load_account(conn, account_type, account_id)
    return reconcile_account(account, SqliteHoldingRegistry(conn))

@router.get(
    '/accounts/{account_type}/{account_id}/compliance',
    summary="Account risk audit",
    description="Checks every position against the account's risk tier limits.",
    tags=["Compliance"],
)
def account_compliance(account_type: str, account_id: str):
    conn = get_conn(settings.db_path)
    account = _load_account(conn, account_type, account_id)
    return check_account_compliance(account, SqliteHoldingRegistry(conn))

@router.post(
    '/compliance/check',
    summary="Pre-trade compliance",
    description="Checks whether adding a position keeps the account inside its risk tier limits.",
    tags=["Compliance"],
)
def compliance_check(req: ComplianceCheckRequest):
    conn = get_conn(settings.db_path)
    try:
        account = get_account(conn, req.account_id, req.account_type)
    except InvalidAccountType as e:
        raise HTTPException(400, str(e))
    return check_position_compliance(account, req.ticker, req.position_value, SqliteHoldingRegistry(conn))

@router.post(
    '/accounts/{account_type}/{account_id}/positions',
    status_code=201,
    summary="Add position",
    description="Adds a position after a compliance check; a failing check returns 422 with the result.",
    tags=["Accounts"],
)
def create_position(account_type: str, account_id: str, req: PositionCreate):
    conn = get_conn(settings.db_path)
    account = _load_account(conn, account_type, account_id)
    registry = SqliteHoldingRegistry(conn)
    result = check_position_compliance(account, req.symbol, req.quantity * req.current_price, registry)
    if not result['compliant']:
        raise HTTPException(422, result)
    position = add_position(conn, account.id, req.symbol, req.quantity, req.current_price, req.entry_price)
    return {'position': asdict(position), 'compliance': result}

@router.put(
    '/accounts/{account_type}/{account_id}/targets',
    summary="Replace target allocations",
    description="Replaces the account's target model; unknown tickers are added to the holdings library.",
    tags=["Accounts"],
)
def put_targets(account_type: str, account_id: str, req: TargetsReplace):
    conn = get_conn(settings.db_path)
    account = _load_account(conn, account_type, account_id)
    registry = SqliteHoldingRegistry(conn)
    try:
        targets = replace_target_allocations(
            conn,
            account.id,
            [t.model_dump() for t in req.targets],
            registry,
            source_portfolio_type=req.source_portfolio_type,
        )
    except ValueError as e:
        raise HTTPException(400, str(e))
    return {
        'targets': [asdict(t) for t in targets],
        'risk_validation': validate_target_risk(targets, account.risk_allocation(), registry),
    }

@router.post(
    '/holdings',
    summary="Classify holding",
    description="Adds a ticker to the holdings library or updates its risk classification.",
    tags=["Holdings"],
)
def upsert_holding(req: HoldingUpsert):
    conn = get_conn(settings.db_path)
    registry = SqliteHoldingRegistry(conn)
    try:
        holding = registry.classify(req.ticker, req.risk_level, name=req.name, category=req.category)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return asdict(holding)

@router.post(
    '/webhooks/signal',
    response_model=SignalResponse,
    summary="Inbound trading signal",
    description="Creates advisory tasks for every account the BUY/SELL signal applies to.",
    tags=["Signals"],
)
def signal_webhook(background: BackgroundTasks, payload: dict = Body(...), x_webhook_secret: Optional[str] = Header(default=None)):
    expected = settings.signal_webhook_secret
    if expected:
        provided = x_webhook_secret or str(payload.get('secret') or '')
        if not hmac.compare_digest(provided, expected):
            raise HTTPException(401, 'invalid webhook secret')
    payload = {k: v for k, v in payload.items() if k != 'secret'}
    conn = get_conn(settings.db_path)
    client = telegram_from_settings(settings)
    sink = TelegramReportSink(conn, client) if client else None
    try:
        result = process_signal(conn, payload, report_sink=sink)
    except SignalValidationError as e:
        raise HTTPException(400, str(e))
    if client and result['tasks_created']:
        summary = format_signal_summary_html(payload.get('direction') or payload.get('signal') or '', str(payload.get('symbol')), result)
        background.add_task(client.send_message_html, summary)
    return SignalResponse(
        accepted=result['accepted'],
        tasksCreated=result['tasks_created'],
        tasks=result['tasks'],
        reportsSent=result['reports_sent'],
        accounts=result['accounts'],
    )

@router.get(
    '/signals',
    summary="List signals",
    tags=["Signals"],
)
def get_signals(status: Optional[str] = None):
    conn = get_conn(settings.db_path)
    try:
        return {'signals': list_signals(conn, status)}
    except ValueError as e:
        raise HTTPException(400, str(e))

@router.post(
    '/signals/dismiss-all',
    summary="Dismiss all pending signals",
    description="Dismisses every pending signal and archives the open tasks they raised.",
    tags=["Signals"],
)
def post_dismiss_all():
    conn = get_conn(settings.db_path)
    return dismiss_all_pending(conn)

@router.post(
    '/signals/{signal_id}/dismiss',
    summary="Dismiss signal",
    description="Dismisses one signal and archives open tasks for the same direction and symbol.",
    tags=["Signals"],
)
def post_dismiss_signal(signal_id: str):
    conn = get_conn(settings.db_path)
    archived = dismiss_signal(conn, signal_id)
    if archived is None:
        raise HTTPException(404, 'signal not found')
    return {'ok': True, 'tasks_archived': archived}

@router.get(
    '/tasks',
    summary="List tasks",
    tags=["Tasks"],
)
def get_tasks(account_id: Optional[str] = None, include_archived: bool = False):
    conn = get_conn(settings.db_path)
    return {'tasks': list_tasks(conn, account_id=account_id, include_archived=include_archived)}

@router.post(
    '/tasks/{task_id}/complete',
    summary="Complete task",
    tags=["Tasks"],
)
def post_complete_task(task_id: str):
    conn = get_conn(settings.db_path)
    if get_task(conn, task_id) is None:
        raise HTTPException(404, 'task not found')
    complete_task(conn, task_id)
    return get_task(conn, task_id)

@router.post(
    '/prices/refresh',
    response_model=RefreshQueued,
    status_code=202,
    summary="Refresh prices",
    description="Refreshes position and holdings library prices in the background.",
    tags=["Prices"],
)
def prices_refresh(background: BackgroundTasks):
    background.add_task(run_price_refresh_sync)
    return RefreshQueued(queued=True)
