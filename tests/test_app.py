import pytest
from fastapi.testclient import TestClient

from conftest import CHAIN_A, CHAIN_B
from vaultflow.app import create_app
from vaultflow.ledger import InMemoryLedgerStore
from vaultflow.models import ChainTransactions
from vaultflow.orchestrator import Orchestrator


@pytest.fixture
def client(orch):
    with TestClient(create_app(orchestrator=orch, run_worker=False)) as c:
        yield c


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_chains_listing(client):
    ids = [c["id"] for c in client.get("/chains").json()]
    assert ids == [CHAIN_A, CHAIN_B]


def test_enqueue_then_process(client, wallet):
    r = client.post("/queue/approval-and-deposit", json={"chain_id": CHAIN_A, "amount": "1"})
    assert r.status_code == 200
    assert [j["kind"] for j in r.json()] == ["approval", "deposit"]
    assert len(client.get("/queue").json()["queued"]) == 2

    summary = client.post("/queue/process").json()
    assert summary["queued"] == []
    assert summary["chains"][str(CHAIN_A)]["state"]["status"] == "completed"

    txs = client.get(f"/chains/{CHAIN_A}/transactions").json()
    assert txs["deposit_confirmed_handle"] is not None
    assert txs["last_approved_amount"] == "1000000"

    history = client.get("/state/history").json()
    assert {h["status"] for h in history} == {"confirmed"}
    assert len(history) == 2

    assert client.delete("/state/history").json() == {"cleared": True}
    assert client.get("/state/history").json() == []


def test_batch_endpoint_returns_results(client):
    r = client.post("/batch", json={"intents": [{"chain_id": CHAIN_A, "amount": "1"}, {"chain_id": CHAIN_B, "amount": "2"}]})
    assert r.status_code == 200
    assert [res["status"] for res in r.json()] == ["success", "success"]


def test_empty_batch_is_rejected(client):
    r = client.post("/queue/batch", json={"intents": []})
    assert r.status_code == 422
    assert r.json()["detail"]["kind"] == "ValidationError"


def test_retry_while_queued_conflicts(client):
    client.post("/queue/deposit", json={"chain_id": CHAIN_A, "amount": "1"})
    r = client.post(f"/chains/{CHAIN_A}/retry", json={"amount": "1"})
    assert r.status_code == 409


def test_unknown_chain(client):
    assert client.get("/chains/999/state").status_code == 404
    assert client.post("/queue/approval", json={"chain_id": 999, "amount": "1"}).status_code == 404


def test_clear_queue(client):
    client.post("/queue/approval-and-deposit", json={"chain_id": CHAIN_B, "amount": "3"})
    assert client.post("/queue/clear").json() == {"cleared": 2}
    assert client.get("/queue").json()["queued"] == []


def test_events_websocket(client):
    with client.websocket_connect("/events") as ws:
        client.post("/queue/batch", json={"intents": [{"chain_id": CHAIN_A, "amount": "1"}]})
        event = ws.receive_json()
    assert event["type"] == "batch_started"
    assert event["chain_count"] == 1
    assert event["total_steps"] == 3


def test_resume_all_with_nothing_restored(client):
    assert client.post("/chains/resume").json() == {}


def test_restored_chain_rejects_enqueue(settings, wallet):
    store = InMemoryLedgerStore({CHAIN_A: ChainTransactions(deposit_handle="0xopen")})
    orch = Orchestrator(settings, wallet, store=store)
    with TestClient(create_app(orchestrator=orch, run_worker=False)) as c:
        # the lifespan reconciles before serving
        assert c.get(f"/chains/{CHAIN_A}/state").json()["status"] == "confirming"
        r = c.post("/queue/approval-and-deposit", json={"chain_id": CHAIN_A, "amount": "1"})
        assert r.status_code == 409
        assert r.json()["detail"]["kind"] == "StateError"
        assert c.post("/queue/deposit", json={"chain_id": CHAIN_A, "amount": "1"}).status_code == 409
    assert wallet.count("submit") == 0
