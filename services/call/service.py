"""Call Service - REST call control, call records and the WebSocket push channel."""
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))


from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import asyncio
import json
import time
import uuid

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from virtualphone.client import KeepAlivePinger
from virtualphone.services.broadcast import Broadcaster
from virtualphone.services.call import CallService
from virtualphone.services.errors import TelephoneError, ValidationError
from virtualphone.services.records import RecordStore
from virtualphone.services.sync import SyncReconciler
from virtualphone.utils.logger import ServiceLogger
from virtualphone.utils.metrics import MetricsCollector

from services.call import config

logger = ServiceLogger(config.SERVICE_NAME, level=config.LOG_LEVEL, log_dir=config.LOG_DIR)
metrics = MetricsCollector(config.SERVICE_NAME)



def build_services(records_file: str):
    """Wire the broadcaster, record store, call service and reconciler together."""
    bus = Broadcaster(logger=logger)
    store = RecordStore(records_file, broadcaster=bus, logger=logger)
    return bus, store, CallService(store, bus, logger=logger), SyncReconciler(store, logger=logger)


broadcaster, record_store, call_svc, reconciler = build_services(config.RECORDS_FILE)

STARTED_AT = time.time()


def server_time() -> str:
    return datetime.now(timezone.utc).isoformat()


def _active_call_dicts() -> List[Dict[str, Any]]:
    now = call_svc.now_ms()
    return [c.to_dict(now) for c in call_svc.list_active()]


class Connection:
    def __init__(self, connection_id: str, websocket: WebSocket, loop: asyncio.AbstractEventLoop):
        self.id = connection_id
        self.websocket = websocket
        self.loop = loop
        self.connected_at = time.time()
        self.last_pong: Optional[float] = None
        self.heartbeat_task: Optional[asyncio.Task] = None


class ConnectionManager:
    """Tracks push-channel clients and fans broadcaster events out to them.

    Missed heartbeats never close a connection; dead sockets are only dropped
    when a send fails or the client disconnects.
    """

    def __init__(self, heartbeat_interval: float):
        self.heartbeat_interval = heartbeat_interval
        self.active_connections: Dict[str, Connection] = {}

    @property
    def count(self) -> int:
        return len(self.active_connections)

    async def connect(self, websocket: WebSocket) -> Optional[Connection]:
        """Accept and greet a client. Returns None if the welcome could not be sent."""
        await websocket.accept()
        conn = Connection(uuid.uuid4().hex, websocket, asyncio.get_running_loop())
        # list_active takes the call lock, keep it off the event loop
        active = await run_in_threadpool(_active_call_dicts)

        self.active_connections[conn.id] = conn
        metrics.gauge("ws_connections", self.count)
        logger.info(f"WebSocket connected: {conn.id}", connections=self.count)
        welcome = {
            "event": "welcome",
            "data": {"connectionId": conn.id, "serverTime": server_time(), "activeCalls": active},
        }
        if not await self._send(conn, welcome):
            return None
        conn.heartbeat_task = asyncio.create_task(self._heartbeat(conn))
        return conn

    def disconnect(self, connection_id: str, reason: str = "") -> None:
        conn = self.active_connections.pop(connection_id, None)
        if conn is None:
            return
        if conn.heartbeat_task is not None:
            conn.heartbeat_task.cancel()
        metrics.gauge("ws_connections", self.count)
        logger.info(f"WebSocket disconnected: {connection_id} {reason}".strip(), connections=self.count)

    async def _send(self, conn: Connection, message: Dict[str, Any]) -> bool:
        try:
            await conn.websocket.send_json(message)
            return True
        except Exception as e:
            logger.warning(f"Send to {conn.id} failed, dropping connection: {e}")
            metrics.increment("ws_send_failures")
            self.disconnect(conn.id, "send failed")
            return False

    async def _heartbeat(self, conn: Connection) -> None:
        while conn.id in self.active_connections:
            await asyncio.sleep(self.heartbeat_interval)
            await self._send(conn, {"event": "heartbeat", "data": {"timestamp": int(time.time() * 1000)}})

    async def handle_message(self, conn: Connection, text: str) -> None:
        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            message = {"type": text.strip()}
        if not isinstance(message, dict):
            return

        kind = message.get("type") or message.get("event")
        if kind == "pong":
            conn.last_pong = time.time()
        elif kind == "ping":
            await self._send(conn, {"event": "pong", "data": {"timestamp": int(time.time() * 1000)}})
        else:
            logger.debug(f"Ignoring client message from {conn.id}", kind=kind)

    def deliver(self, event: str, payload: Dict[str, Any]) -> None:
        """Broadcaster subscriber: schedule the send on each connection's loop."""
        message = {"event": event, "data": payload}
        for conn in list(self.active_connections.values()):
            try:
                asyncio.run_coroutine_threadsafe(self._send(conn, message), conn.loop)
            except RuntimeError as e:
                logger.warning(f"Event loop for {conn.id} is gone: {e}")
                self.disconnect(conn.id, "loop closed")


manager = ConnectionManager(config.HEARTBEAT_INTERVAL)
broadcaster.subscribe(manager.deliver)


@asynccontextmanager
async def lifespan(app: FastAPI):
    pinger = None
    if config.KEEP_ALIVE_URL:
        pinger = KeepAlivePinger(config.KEEP_ALIVE_URL, config.KEEP_ALIVE_INTERVAL, logger=logger)
        pinger.start()
    logger.info(f"Call service starting up on port {config.PORT}", records_file=config.RECORDS_FILE)
    yield
    if pinger is not None:
        pinger.stop()
    for connection_id in list(manager.active_connections):
        manager.disconnect(connection_id, "shutdown")
    logger.info("Call service shut down")


app = FastAPI(title="Call Service", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
)


@app.exception_handler(TelephoneError)
async def telephone_error_handler(request: Request, exc: TelephoneError):
    logger.warning(f"{request.method} {request.url.path} failed: {exc.message}")
    metrics.increment("request_errors", tags={"status": str(exc.status_code)})
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"{request.method} {request.url.path} invalid body")
    return JSONResponse(status_code=400, content={"error": "Invalid request body"})


class StartCallRequest(BaseModel):
    phoneNumber: Optional[str] = None


class CallControlRequest(BaseModel):
    callId: Optional[str] = None
    updateOnly: bool = False


class SyncRecordsRequest(BaseModel):
    records: Optional[List[Dict[str, Any]]] = None
    phoneRecords: Optional[List[Dict[str, Any]]] = None


def _refresh_gauges() -> None:
    metrics.gauge("active_calls", len(call_svc.list_active()))
    metrics.gauge("records", record_store.count())


@app.get("/api/status")
def status():
    return {
        "status": "running",
        "uptime": round(time.time() - STARTED_AT, 1),
        "serverTime": server_time(),
        "connections": manager.count,
        "activeCalls": len(call_svc.list_active()),
    }


@app.get("/api/test")
def connectivity_test():
    return {"success": True, "message": "Call service reachable", "serverTime": server_time()}


@app.get("/api/calls")
def list_calls():
    return _active_call_dicts()


@app.post("/api/call")
def start_call(req: StartCallRequest):
    logger.info("Call requested", phone=req.phoneNumber)
    metrics.increment("requests_total")
    call, created = call_svc.open_call(req.phoneNumber)
    metrics.increment("calls_started" if created else "calls_reused")
    _refresh_gauges()
    return {"callId": call.call_id}


@app.post("/api/answer")
def answer_call(req: CallControlRequest):
    metrics.increment("requests_total")
    call_svc.answer(req.callId or "", update_only=req.updateOnly)
    metrics.increment("calls_answered")
    _refresh_gauges()
    return {"success": True}


@app.post("/api/hangup")
def hangup_call(req: CallControlRequest):
    metrics.increment("requests_total")
    if not req.callId:
        raise ValidationError("callId is required")
    start_time = time.time()
    result = call_svc.hangup(req.callId, update_only=req.updateOnly)
    metrics.timing("hangup_duration", (time.time() - start_time) * 1000)
    metrics.increment("calls_ended" if result["found"] else "hangups_unknown")
    _refresh_gauges()
    return {"success": True}


@app.get("/api/call-records")
def call_records():
    return [r.to_dict() for r in record_store.get_all()]


@app.get("/api/merged-call-records")
def merged_call_records():
    return record_store.merged_payload()


@app.post("/api/sync-records")
def sync_records(req: SyncRecordsRequest):
    incoming = req.records if req.records is not None else (req.phoneRecords or [])
    start_time = time.time()
    records = reconciler.reconcile(incoming)
    metrics.increment("records_synced", len(incoming))
    metrics.timing("sync_duration", (time.time() - start_time) * 1000)
    _refresh_gauges()
    return {
        "success": True,
        "records": [r.to_dict() for r in records],
        "recordCount": len(records),
    }


@app.post("/api/clear-history")
def clear_history():
    logger.warning("Clearing call history")
    call_svc.clear_history()
    metrics.increment("history_cleared")
    _refresh_gauges()
    return {"success": True}


@app.get("/keep-alive", response_class=PlainTextResponse)
def keep_alive():
    return f"OK {server_time()}"


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Push channel: welcome, call and record events, heartbeats."""
    conn = await manager.connect(websocket)
    if conn is None:
        return
    try:
        while True:
            text = await websocket.receive_text()
            await manager.handle_message(conn, text)
    except WebSocketDisconnect as e:
        manager.disconnect(conn.id, f"code={e.code}")
    finally:
        manager.disconnect(conn.id)


@app.get("/health")
def health():
    return {"status": "ok", "service": config.SERVICE_NAME}


@app.get("/logs")
def get_logs(limit: int = 100):
    """Get recent logs from this service."""
    return logger.get_recent_logs(limit=limit)


@app.get("/metrics")
def get_metrics(period: Optional[int] = None):
    """Get metrics from this service."""
    result = metrics.get_all_metrics(time_period_minutes=period)
    result["calls"] = call_svc.stats()
    return result


def main():
    import uvicorn
    uvicorn.run(
        app,
        host=config.HOST,
        port=config.PORT,
        ws_ping_interval=config.WS_PING_INTERVAL,
        ws_ping_timeout=config.WS_PING_TIMEOUT,
    )


if __name__ == "__main__":
    main()
