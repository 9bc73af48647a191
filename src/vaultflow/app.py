import asyncio
import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import APIRouter, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

import vaultflow.constants as C
from vaultflow.config import Settings, load_settings
from vaultflow.errors import OrchestratorError, StateError, ValidationError, WalletRPCError
from vaultflow.events import event_to_dict
from vaultflow.ledger import LedgerStore
from vaultflow.logging_config import setup_logging
from vaultflow.orchestrator import Orchestrator
from vaultflow.sqlite_store import SQLiteLedgerStore
from vaultflow.wallet import HttpWalletAdapter, WalletAdapter

setup_logging()
log = logging.getLogger("vaultflow.app")

SHUTDOWN_GRACE = 5.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    stop = asyncio.Event()
    app.state.stop = stop
    settings: Settings = app.state.settings

    if app.state.orch is None:
        wallet = app.state.wallet or HttpWalletAdapter.from_settings(settings)
        store = app.state.store if app.state.store is not None else SQLiteLedgerStore(settings.ledger_path)
        app.state.orch = Orchestrator(settings, wallet, store=store)
    orch: Orchestrator = app.state.orch

    if isinstance(orch.wallet, HttpWalletAdapter):
        try:
            orch.state.active_chain_id = await orch.wallet.wait_until_ready(max_retries=3)
            log.info("Wallet is on chain %s", orch.state.active_chain_id)
        except (httpx.HTTPError, OrchestratorError, WalletRPCError, TypeError, ValueError) as e:
            log.warning("Wallet bridge at %s not reachable yet: %s", settings.wallet_url, e)

    restored = orch.reconcile()
    if restored:
        log.info("Restored %s unconfirmed transaction(s): %s", len(restored), restored)

    async with asyncio.TaskGroup() as tg:
        worker = None
        if app.state.run_worker:
            worker = tg.create_task(orch.run_worker(stop), name="queue_worker")
        log.info("Orchestrator ready (%s chain(s) configured)", len(settings.chains))
        try:
            yield
        finally:
            log.info("Shutting down...")
            stop.set()
            if worker is not None:
                try:
                    async with asyncio.timeout(SHUTDOWN_GRACE):
                        await asyncio.shield(worker)
                except TimeoutError:
                    # in-flight handles stay in the ledger for the next start
                    log.warning("Worker still busy after %.0fs, cancelling", SHUTDOWN_GRACE)
                    worker.cancel()

    log.info("Shutdown complete")


r_queue = APIRouter(prefix="/queue", tags=["Queue"])
r_chains = APIRouter(prefix="/chains", tags=["Chains"])
r_batch = APIRouter(prefix="/batch", tags=["Batch"])
r_state = APIRouter(prefix="/state", tags=["State"])
r_events = APIRouter(tags=["Events"])


class AmountReq(BaseModel):
    chain_id: int
    amount: str = Field(min_length=1)


class BatchReq(BaseModel):
    intents: list[AmountReq]


class RetryReq(BaseModel):
    amount: str = Field(min_length=1)


class ResumeReq(BaseModel):
    amount: str | None = None


def _orch(request: Request) -> Orchestrator:
    return request.app.state.orch


def _http_error(e: OrchestratorError) -> HTTPException:
    if isinstance(e, ValidationError):
        return HTTPException(status_code=422, detail=e.to_dict())
    if isinstance(e, StateError):
        return HTTPException(status_code=409, detail=e.to_dict())
    return HTTPException(status_code=400, detail=e.to_dict())


def _known_chain(orch: Orchestrator, chain_id: int) -> None:
    if orch.settings.chain(chain_id) is None:
        raise HTTPException(status_code=404, detail=f"Unsupported chain: {chain_id}")


# =========================================================================
# Queue
# =========================================================================

@r_queue.get("")
async def queue_list(request: Request):
    orch = _orch(request)
    return {
        "queued": [j.to_dict() for j in orch.queue_snapshot()],
        "in_flight": [j.to_dict() for j in orch.queue.in_flight()],
        "is_processing": orch.state.is_processing,
    }


@r_queue.post("/approval")
async def queue_approval(req: AmountReq, request: Request):
    orch = _orch(request)
    _known_chain(orch, req.chain_id)
    try:
        return orch.enqueue_approval(req.chain_id, req.amount).to_dict()
    except OrchestratorError as e:
        raise _http_error(e)


@r_queue.post("/deposit")
async def queue_deposit(req: AmountReq, request: Request):
    orch = _orch(request)
    _known_chain(orch, req.chain_id)
    try:
        return orch.enqueue_deposit(req.chain_id, req.amount).to_dict()
    except OrchestratorError as e:
        raise _http_error(e)


@r_queue.post("/approval-and-deposit")
async def queue_pair(req: AmountReq, request: Request):
    orch = _orch(request)
    _known_chain(orch, req.chain_id)
    try:
        jobs = orch.enqueue_approval_and_deposit(req.chain_id, req.amount)
    except OrchestratorError as e:
        raise _http_error(e)
    return [j.to_dict() for j in jobs]


@r_queue.post("/batch")
async def queue_batch(req: BatchReq, request: Request):
    orch = _orch(request)
    try:
        run_id, jobs = orch.enqueue_batch([(i.chain_id, i.amount) for i in req.intents])
    except OrchestratorError as e:
        raise _http_error(e)
    return {"run_id": run_id, "jobs": [j.to_dict() for j in jobs]}


@r_queue.post("/process")
async def queue_process(request: Request):
    """Drain the queue now and wait for it. Useful when the background worker is off."""
    orch = _orch(request)
    await orch.process_queue()
    return orch.summary()


@r_queue.post("/clear")
async def queue_clear(request: Request):
    return {"cleared": _orch(request).clear_queue()}


@r_queue.post("/cancel")
async def queue_cancel(request: Request):
    return {"drained": _orch(request).cancel()}


@r_queue.get("/runs/{run_id}")
async def queue_run(run_id: str, request: Request):
    run = _orch(request).queue.run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Unknown run: {run_id}")
    return {
        "run_id": run_id,
        "batch": run.batch,
        "finished": run.finished,
        "completed_steps": run.completed_steps,
        "total_steps": run.total_steps,
        "results": [r.to_dict() for r in run.results()],
    }


# =========================================================================
# Chains
# =========================================================================

@r_chains.get("")
async def chains_list(request: Request):
    orch = _orch(request)
    return [
        {"id": c.id, "name": c.name, "token": c.token, "vault": c.vault, "decimals": c.decimals}
        for c in orch.settings.chains.values()
    ]


@r_chains.get("/{chain_id}/state")
async def chain_state(chain_id: int, request: Request):
    orch = _orch(request)
    _known_chain(orch, chain_id)
    return orch.get_chain_state(chain_id).to_dict()


@r_chains.get("/{chain_id}/transactions")
async def chain_transactions(chain_id: int, request: Request):
    orch = _orch(request)
    _known_chain(orch, chain_id)
    return orch.get_chain_transactions(chain_id).to_dict()


@r_chains.delete("/{chain_id}/transactions")
async def chain_invalidate(chain_id: int, request: Request):
    orch = _orch(request)
    _known_chain(orch, chain_id)
    try:
        orch.invalidate_chain(chain_id)
    except OrchestratorError as e:
        raise _http_error(e)
    return {"chain_id": chain_id, "invalidated": True}


@r_chains.post("/{chain_id}/retry")
async def chain_retry(chain_id: int, req: RetryReq, request: Request):
    orch = _orch(request)
    _known_chain(orch, chain_id)
    try:
        jobs = orch.enqueue_retry(chain_id, req.amount)
    except OrchestratorError as e:
        raise _http_error(e)
    return [j.to_dict() for j in jobs]


@r_chains.post("/{chain_id}/resume")
async def chain_resume(chain_id: int, req: ResumeReq, request: Request):
    orch = _orch(request)
    _known_chain(orch, chain_id)
    try:
        handle = await orch.resume_confirmation(chain_id, amount=req.amount)
    except OrchestratorError as e:
        raise _http_error(e)
    return {"chain_id": chain_id, "handle": handle, "state": orch.get_chain_state(chain_id).to_dict()}


@r_chains.post("/resume")
async def chains_resume_all(request: Request):
    """Resume the confirmation wait on every chain restored at startup."""
    return await _orch(request).resume_all()


@r_chains.post("/{chain_id}/clear-error")
async def chain_clear_error(chain_id: int, request: Request):
    orch = _orch(request)
    _known_chain(orch, chain_id)
    orch.clear_error(chain_id)
    return orch.get_chain_state(chain_id).to_dict()


@r_chains.post("/clear-errors")
async def chains_clear_errors(request: Request):
    orch = _orch(request)
    orch.clear_all_errors()
    return {cid: orch.get_chain_state(cid).to_dict() for cid in orch.settings.chains}


# =========================================================================
# Batch
# =========================================================================

@r_batch.post("")
async def batch_execute(req: BatchReq, request: Request):
    """Queue a batch and block until every chain in it has settled."""
    orch = _orch(request)
    try:
        results = await orch.execute_batch([(i.chain_id, i.amount) for i in req.intents])
    except OrchestratorError as e:
        raise _http_error(e)
    return [r.to_dict() for r in results]


# =========================================================================
# State
# =========================================================================

@r_state.get("/summary")
async def state_summary(request: Request):
    return _orch(request).summary()


@r_state.get("/pending")
async def state_pending(request: Request):
    return _orch(request).pending_transactions()


@r_state.get("/approved-not-deposited")
async def state_approved_not_deposited(request: Request):
    return _orch(request).approved_not_deposited()


@r_state.get("/history")
async def state_history(request: Request, limit: int = C.HISTORY_LIMIT):
    return [e.to_dict() for e in _orch(request).history(limit)]


@r_state.delete("/history")
async def state_history_clear(request: Request):
    _orch(request).ledger.clear_history()
    return {"cleared": True}


# =========================================================================
# Events
# =========================================================================

@r_events.websocket("/events")
async def events_ws(ws: WebSocket):
    orch: Orchestrator = ws.app.state.orch
    q = orch.bus.subscribe()
    await ws.accept()

    async def pump():
        while True:
            event = await q.get()
            await ws.send_json(event_to_dict(event))

    sender = asyncio.create_task(pump())
    try:
        # inbound frames are ignored, reading only notices the disconnect
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        log.debug("Event subscriber disconnected")
    finally:
        sender.cancel()
        orch.bus.unsubscribe(q)


def create_app(
    settings: Settings | None = None,
    *,
    orchestrator: Orchestrator | None = None,
    wallet: WalletAdapter | None = None,
    store: LedgerStore | None = None,
    run_worker: bool = True,
) -> FastAPI:
    app = FastAPI(
        title="vaultflow",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "Queue", "description": "Enqueue, drain, clear and cancel chain operations"},
            {"name": "Chains", "description": "Per-chain state, ledger, retry and resume"},
            {"name": "Batch", "description": "Run a multi-chain batch to completion"},
            {"name": "State", "description": "Summary, pending transactions and history"},
        ],
        swagger_ui_parameters={
            "tagsSorter": "alpha",
            "operationsSorter": "alpha",
        },
    )
    app.state.settings = orchestrator.settings if orchestrator is not None else (settings or load_settings())
    app.state.orch = orchestrator
    app.state.wallet = wallet
    app.state.store = store
    app.state.run_worker = run_worker

    @app.get("/health")
    def health():
        return {"status": "ok"}

    app.include_router(r_queue)
    app.include_router(r_chains)
    app.include_router(r_batch)
    app.include_router(r_state)
    app.include_router(r_events)
    return app


app = create_app()
