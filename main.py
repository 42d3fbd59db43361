import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    Form,
    Request,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from checkin import __version__
from checkin.admin import AdminDatabase
from checkin.checkin import CheckInOutcome
from checkin.config import AppConfig
from checkin.context import AppContext
from checkin.errors import DomainError, ErrorCode
from checkin.export import (
    download_filename,
    qr_png,
    share_link,
    share_message,
    tickets_csv,
)
from checkin.models import (
    BulkDeleteIn,
    CameraErrorIn,
    EventSettings,
    EventSettingsIn,
    ScanIn,
    Ticket,
    TicketIn,
)

logger = logging.getLogger("checkin.app")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

HTTP_STATUS_BY_CODE = {
    ErrorCode.DUPLICATE_ID: status.HTTP_409_CONFLICT,
    ErrorCode.TICKET_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.STATUS_CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCode.INVALID_TRANSITION: status.HTTP_400_BAD_REQUEST,
    ErrorCode.STORE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.PERMISSION_DENIED: status.HTTP_403_FORBIDDEN,
    ErrorCode.PROHIBITED_EVENT_NAME: status.HTTP_400_BAD_REQUEST,
}

security = HTTPBasic()
router = APIRouter()


# -------------------
# --- DEPENDENCIES ---
# -------------------
def get_ctx(request: Request) -> AppContext:
    return request.app.state.ctx


def require_admin(
    request: Request, credentials: HTTPBasicCredentials = Depends(security)
) -> str:
    """Verify organizer HTTP Basic credentials."""
    return request.app.state.admin.verify_credentials(credentials)


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    return JSONResponse(
        status_code=HTTP_STATUS_BY_CODE.get(exc.code, status.HTTP_400_BAD_REQUEST),
        content={"detail": exc.message, "code": exc.code.value},
    )


def outcome_body(outcome: Optional[CheckInOutcome]) -> dict:
    if outcome is None:
        return {"result": "ignored", "ticket": None, "message": "Cooling down"}
    return {
        "result": outcome.result.value,
        "ticket_id": outcome.ticket_id,
        "ticket": outcome.ticket.model_dump(mode="json") if outcome.ticket else None,
        "message": outcome.message,
    }


# -------------------
# --- TICKETS API ---
# -------------------
@router.post(
    "/api/tickets",
    status_code=status.HTTP_201_CREATED,
    response_model=Ticket,
    tags=["Tickets"],
)
def create_ticket(
    payload: TicketIn,
    ctx: AppContext = Depends(get_ctx),
    user: str = Depends(require_admin),
):
    """Register a ticket; it starts out booked."""
    return ctx.register_ticket(payload)


@router.get("/api/tickets", response_model=list[Ticket], tags=["Tickets"])
def list_tickets(
    refresh: bool = False,
    ctx: AppContext = Depends(get_ctx),
    user: str = Depends(require_admin),
):
    """Return tickets newest first from the synced cache."""
    return ctx.tickets(refresh=refresh)


@router.post("/api/tickets/delete", tags=["Tickets"])
def delete_tickets(
    payload: BulkDeleteIn,
    ctx: AppContext = Depends(get_ctx),
    user: str = Depends(require_admin),
):
    """Delete exactly the given tickets; unknown ids are ignored."""
    return {"deleted": ctx.delete_tickets(payload.ids)}


@router.get("/api/tickets/{ticket_id}", response_model=Ticket, tags=["Tickets"])
def get_ticket(
    ticket_id: str,
    ctx: AppContext = Depends(get_ctx),
    user: str = Depends(require_admin),
):
    return ctx.get_ticket(ticket_id)


@router.delete(
    "/api/tickets/{ticket_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Tickets"],
)
def delete_ticket(
    ticket_id: str,
    ctx: AppContext = Depends(get_ctx),
    user: str = Depends(require_admin),
):
    ctx.delete_ticket(ticket_id)


@router.get("/api/tickets/{ticket_id}/qr.png", tags=["QR"])
def ticket_qr(ticket_id: str):
    """QR code PNG encoding the bare ticket id."""
    return StreamingResponse(
        qr_png(ticket_id),
        media_type="image/png",
        headers={
            "Content-Disposition": f"inline; filename={download_filename(ticket_id)}"
        },
    )


@router.get("/api/tickets/{ticket_id}/share", tags=["QR"])
def ticket_share(ticket_id: str, request: Request, ctx: AppContext = Depends(get_ctx)):
    """Download link for the ticket image and a pre-filled share link."""
    settings = ctx.load_settings()
    return {
        "download_url": str(request.url_for("ticket_qr", ticket_id=ticket_id)),
        "filename": download_filename(ticket_id),
        "share_url": share_link(settings),
        "message": share_message(settings),
    }


# -------------------
# --- SCANNING API ---
# -------------------
@router.post("/api/scan", tags=["Scanning"])
def receive_scan(payload: ScanIn, ctx: AppContext = Depends(get_ctx)):
    """Check in a decoded QR payload, gated by the device's scan cooldown."""
    return outcome_body(ctx.scan(payload.payload, device_id=payload.device_id))


@router.post("/api/checkin/{ticket_id}", tags=["Scanning"])
def checkin_ticket(ticket_id: str, ctx: AppContext = Depends(get_ctx)):
    """Check in a ticket by id without the scan cooldown."""
    return outcome_body(ctx.check_in(ticket_id))


@router.post("/api/scanner/camera-error", tags=["Scanning"])
def camera_error(payload: CameraErrorIn, ctx: AppContext = Depends(get_ctx)):
    """Record that a scanner device could not open its camera."""
    error = ctx.report_camera_error(payload.device_id, payload.detail)
    return {"status": "logged", "code": error.code.value, "detail": error.message}


@router.get("/api/sync/status", tags=["Scanning"])
def sync_status(ctx: AppContext = Depends(get_ctx)):
    return {
        "connectivity": ctx.bridge.connectivity.value,
        "cached_tickets": len(ctx.bridge.tickets),
    }


@router.websocket("/ws/tickets")
async def tickets_feed(websocket: WebSocket):
    """Push ticket inserts, updates and deletes to connected devices."""
    ctx: AppContext = websocket.app.state.ctx
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    async def pump():
        while True:
            change = await queue.get()
            if change is None:
                return
            await websocket.send_json({"type": "change", **change.model_dump(mode="json")})

    async def drain():
        while True:
            await websocket.receive_text()

    subscription = None
    if ctx.feed is not None:
        # subscribe before accepting so no change between handshake and loop is lost
        subscription = ctx.feed.subscribe(
            lambda change: loop.call_soon_threadsafe(queue.put_nowait, change),
            on_disconnect=lambda: loop.call_soon_threadsafe(queue.put_nowait, None),
        )
    try:
        await websocket.accept()
        await websocket.send_json(
            {"type": "hello", "connectivity": ctx.bridge.connectivity.value}
        )
        tasks = [asyncio.create_task(drain())]
        if subscription is not None:
            tasks.append(asyncio.create_task(pump()))
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.error("Ticket feed socket failed: %s", exc)
        if subscription is not None and not subscription.active:
            await websocket.close(code=1012)
    finally:
        if subscription is not None:
            subscription.close()


# -------------------
# --- SETTINGS API ---
# -------------------
@router.get("/api/settings", response_model=EventSettings, tags=["Settings"])
def get_settings(ctx: AppContext = Depends(get_ctx)):
    return ctx.load_settings()


@router.put("/api/settings", response_model=EventSettings, tags=["Settings"])
def save_settings(
    payload: EventSettingsIn,
    ctx: AppContext = Depends(get_ctx),
    user: str = Depends(require_admin),
):
    """Merge the submitted fields into the stored event settings."""
    return ctx.save_settings(payload)


# -------------------
# --- ADMIN ENDPOINTS ---
# -------------------
@router.get("/admin/export-tickets", tags=["Admin"])
def export_tickets(
    ctx: AppContext = Depends(get_ctx), user: str = Depends(require_admin)
):
    """Export all tickets as a CSV file."""
    return StreamingResponse(
        tickets_csv(ctx.store.list_all()),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=tickets.csv"},
    )


@router.get("/admin/prohibited-words", tags=["Admin"])
def list_prohibited_words(request: Request, user: str = Depends(require_admin)):
    words = request.app.state.admin.list_prohibited_words()
    return {"words": [{"id": w[0], "word": w[1]} for w in words]}


@router.post("/admin/prohibited-words", tags=["Admin"])
def add_prohibited_word(
    request: Request, word: str = Form(...), user: str = Depends(require_admin)
):
    """Add a word that event names may not contain."""
    request.app.state.admin.add_prohibited_word(word.strip())
    return {"status": "ok", "word": word.strip()}


@router.delete("/admin/prohibited-words/{word_id}", tags=["Admin"])
def remove_prohibited_word(
    word_id: int, request: Request, user: str = Depends(require_admin)
):
    request.app.state.admin.remove_prohibited_word(word_id)
    return {"status": "ok"}


# -------------------
# --- PAGES ---
# -------------------
@router.get("/", response_class=HTMLResponse, tags=["Navigation"])
async def homepage():
    """Simple homepage linking the organizer console and the door scanner."""
    html = """
    <!doctype html>
    <html>
      <head><meta charset="utf-8">
        <meta name="viewport" content="width=device-width, initial-scale=1">
        <title>Event Check-in</title>
        <script src="https://cdn.tailwindcss.com"></script>
      </head>
      <body class="bg-gray-100 flex flex-col items-center justify-start min-h-screen p-4">
        <div class="bg-white shadow-xl rounded-2xl p-6 max-w-md w-full mx-auto text-center">
          <h1 id="eventName" class="text-2xl font-bold text-gray-800 mb-2">Event</h1>
          <p id="eventPlace" class="text-gray-600 mb-6"></p>
          <a href="/scan" class="block w-full bg-blue-600 text-white font-semibold py-3 rounded-lg hover:bg-blue-700 mb-3">Scan Tickets</a>
          <a href="/organizer" class="block w-full bg-gray-700 text-white font-semibold py-3 rounded-lg hover:bg-gray-800">Organizer</a>
        </div>
        <script>
          fetch('/api/settings').then(r => r.json()).then(s => {
            document.getElementById('eventName').textContent = s.event_name || 'Event';
            document.getElementById('eventPlace').textContent = s.event_place || '';
          });
        </script>
      </body>
    </html>
    """
    return HTMLResponse(html)


@router.get("/favicon.ico", include_in_schema=False)
def favicon():
    return StreamingResponse(qr_png("Event Check-in"), media_type="image/png")


@router.get("/organizer", response_class=HTMLResponse, tags=["Navigation"])
def organizer_page(user: str = Depends(require_admin)):
    """Organizer console: settings, ticket registration and the booked list."""
    html = """
    <!doctype html>
    <html>
      <head><meta charset="utf-8">
        <meta name="viewport" content="width=device-width, initial-scale=1">
        <title>Organizer</title>
        <script src="https://cdn.tailwindcss.com"></script>
      </head>
      <body class="bg-gray-100 min-h-screen p-4">
        <div class="max-w-3xl mx-auto space-y-6">
          <div class="flex items-center justify-between">
            <h1 id="headerEventName" class="text-2xl font-bold text-gray-800">Event</h1>
            <span id="live" class="text-sm px-2 py-1 rounded bg-gray-300">connecting…</span>
          </div>

          <form id="settingsForm" class="bg-white shadow rounded-2xl p-4 space-y-2">
            <h2 class="font-semibold">Settings</h2>
            <input id="settingName" class="w-full border rounded-lg px-3 py-2" placeholder="Event name">
            <input id="settingPlace" class="w-full border rounded-lg px-3 py-2" placeholder="Place">
            <input id="settingTime" type="datetime-local" class="w-full border rounded-lg px-3 py-2">
            <button class="bg-gray-700 text-white px-4 py-2 rounded-lg">Save Settings</button>
          </form>

          <form id="ticketForm" class="bg-white shadow rounded-2xl p-4 space-y-2">
            <h2 class="font-semibold">New Ticket</h2>
            <input id="ticketName" required class="w-full border rounded-lg px-3 py-2" placeholder="Full name">
            <select id="ticketGender" class="w-full border rounded-lg px-3 py-2">
              <option>Male</option><option>Female</option><option>Other</option>
            </select>
            <input id="ticketAge" required type="number" min="1" class="w-full border rounded-lg px-3 py-2" placeholder="Age">
            <input id="ticketPhone" required class="w-full border rounded-lg px-3 py-2" value="+91 ">
            <button class="bg-blue-600 text-white px-4 py-2 rounded-lg">Create Ticket</button>
            <p id="formStatus" class="text-sm text-red-600"></p>
          </form>

          <div id="preview" class="hidden bg-white shadow rounded-2xl p-4 text-center space-y-2">
            <img id="previewQr" class="mx-auto w-32 h-32" alt="QR">
            <div id="previewId" class="font-mono"></div>
            <div id="previewName" class="font-semibold"></div>
            <button id="shareBtn" class="bg-green-600 text-white px-4 py-2 rounded-lg">Download &amp; Share</button>
          </div>

          <div class="bg-white shadow rounded-2xl p-4">
            <div class="flex justify-between mb-2">
              <h2 class="font-semibold">Booked Tickets</h2>
              <button id="deleteSelected" class="hidden bg-red-600 text-white px-3 py-1 rounded">Delete selected</button>
            </div>
            <table class="w-full text-left text-sm">
              <thead><tr><th><input type="checkbox" id="selectAll"></th><th>Name</th><th>Details</th><th>Status</th><th></th></tr></thead>
              <tbody id="ticketRows"></tbody>
            </table>
          </div>
        </div>
        <script>
          let tickets = [];
          let previewId = null;
          const rows = document.getElementById('ticketRows');
          const liveEl = document.getElementById('live');

          function render() {
            rows.innerHTML = '';
            tickets.forEach(t => {
              const tr = document.createElement('tr');
              const cells = [
                Object.assign(document.createElement('input'), {type: 'checkbox', className: 'ticket-select', value: t.id}),
                document.createTextNode(t.full_name),
                document.createTextNode(`${t.gender}, ${t.age} · ${t.phone_number}`),
                Object.assign(document.createElement('span'), {
                  textContent: t.status,
                  className: t.status === 'arrived' ? 'text-green-700 font-semibold' : 'text-gray-600'
                }),
                Object.assign(document.createElement('button'), {textContent: '×', className: 'text-red-600 px-2'})
              ];
              cells[4].addEventListener('click', () => deleteOne(t.id));
              cells[0].addEventListener('change', updateDeleteBtn);
              cells.forEach(c => { const td = document.createElement('td'); td.appendChild(c); tr.appendChild(td); });
              rows.appendChild(tr);
            });
            updateDeleteBtn();
          }

          function selectedIds() {
            return Array.from(document.querySelectorAll('.ticket-select:checked')).map(cb => cb.value);
          }

          function updateDeleteBtn() {
            document.getElementById('deleteSelected').classList.toggle('hidden', selectedIds().length === 0);
          }

          function applyChange(c) {
            if (c.kind === 'delete') {
              tickets = tickets.filter(t => t.id !== c.ticket_id);
            } else if (c.kind === 'insert') {
              tickets = [c.ticket].concat(tickets.filter(t => t.id !== c.ticket_id));
            } else {
              tickets = tickets.map(t => t.id === c.ticket_id ? c.ticket : t);
            }
            render();
          }

          async function loadTickets() {
            const resp = await fetch('/api/tickets?refresh=true');
            if (resp.ok) { tickets = await resp.json(); render(); }
          }

          function connectFeed(delay) {
            const proto = location.protocol === 'https:' ? 'wss' : 'ws';
            const ws = new WebSocket(`${proto}://${location.host}/ws/tickets`);
            ws.onmessage = (ev) => {
              const msg = JSON.parse(ev.data);
              if (msg.type === 'hello') {
                liveEl.textContent = msg.connectivity === 'local' ? 'local' : 'live';
                liveEl.className = 'text-sm px-2 py-1 rounded bg-green-200';
                loadTickets();
              } else if (msg.type === 'change') {
                applyChange(msg);
              }
            };
            ws.onclose = () => {
              liveEl.textContent = 'offline: list may be stale';
              liveEl.className = 'text-sm px-2 py-1 rounded bg-yellow-200';
              const next = Math.min((delay || 1000) * 2, 30000);
              setTimeout(() => connectFeed(next), delay || 1000);
            };
          }

          async function loadSettings() {
            const s = await (await fetch('/api/settings')).json();
            document.getElementById('settingName').value = s.event_name || '';
            document.getElementById('settingPlace').value = s.event_place || '';
            if (s.arrival_deadline) {
              const d = new Date(s.arrival_deadline);
              document.getElementById('settingTime').value =
                new Date(d.getTime() - d.getTimezoneOffset() * 60000).toISOString().slice(0, 16);
            }
            document.getElementById('headerEventName').textContent = s.event_name || 'Event';
          }

          document.getElementById('settingsForm').addEventListener('submit', async (e) => {
            e.preventDefault();
            const time = document.getElementById('settingTime').value;
            const body = {
              event_name: document.getElementById('settingName').value,
              event_place: document.getElementById('settingPlace').value,
            };
            if (time) body.arrival_deadline = new Date(time).toISOString();
            const resp = await fetch('/api/settings', {
              method: 'PUT', headers: {'Content-Type': 'application/json'}, body: JSON.stringify(body)
            });
            const data = await resp.json();
            alert(resp.ok ? 'Settings saved!' : (data.detail || 'Could not save settings'));
            loadSettings();
          });

          document.getElementById('ticketForm').addEventListener('submit', async (e) => {
            e.preventDefault();
            const statusEl = document.getElementById('formStatus');
            statusEl.textContent = '';
            const resp = await fetch('/api/tickets', {
              method: 'POST',
              headers: {'Content-Type': 'application/json'},
              body: JSON.stringify({
                full_name: document.getElementById('ticketName').value,
                gender: document.getElementById('ticketGender').value,
                age: parseInt(document.getElementById('ticketAge').value, 10),
                phone_number: document.getElementById('ticketPhone').value
              })
            });
            const data = await resp.json();
            if (!resp.ok) {
              statusEl.textContent = typeof data.detail === 'string' ? data.detail : 'Please check the form.';
              return;
            }
            applyChange({kind: 'insert', ticket_id: data.id, ticket: data});
            previewId = data.id;
            document.getElementById('preview').classList.remove('hidden');
            document.getElementById('previewQr').src = `/api/tickets/${encodeURIComponent(data.id)}/qr.png`;
            document.getElementById('previewId').textContent = '#' + data.id;
            document.getElementById('previewName').textContent = data.full_name;
            e.target.reset();
            document.getElementById('ticketPhone').value = '+91 ';
          });

          document.getElementById('shareBtn').addEventListener('click', async () => {
            if (!previewId) return;
            const share = await (await fetch(`/api/tickets/${encodeURIComponent(previewId)}/share`)).json();
            const link = document.createElement('a');
            link.download = share.filename;
            link.href = share.download_url;
            link.click();
            window.open(share.share_url, '_blank');
          });

          async function deleteOne(id) {
            if (!confirm('Delete this ticket?')) return;
            const resp = await fetch(`/api/tickets/${encodeURIComponent(id)}`, {method: 'DELETE'});
            if (resp.ok || resp.status === 404) applyChange({kind: 'delete', ticket_id: id});
          }

          document.getElementById('deleteSelected').addEventListener('click', async () => {
            const ids = selectedIds();
            if (!confirm(`Delete ${ids.length} tickets?`)) return;
            const resp = await fetch('/api/tickets/delete', {
              method: 'POST', headers: {'Content-Type': 'application/json'}, body: JSON.stringify({ids})
            });
            if (resp.ok) ids.forEach(id => applyChange({kind: 'delete', ticket_id: id}));
            document.getElementById('selectAll').checked = false;
          });

          document.getElementById('selectAll').addEventListener('change', (e) => {
            document.querySelectorAll('.ticket-select').forEach(cb => cb.checked = e.target.checked);
            updateDeleteBtn();
          });

          loadSettings();
          connectFeed(1000);
        </script>
      </body>
    </html>
    """
    return HTMLResponse(html)


@router.get("/scan", response_class=HTMLResponse, tags=["Scanning"])
async def scan_page():
    """Door scanner: reads QR codes from the rear camera and checks tickets in."""
    html = """
    <!doctype html>
    <html>
      <head>
        <meta charset="utf-8">
        <meta name="viewport" content="width=device-width, initial-scale=1">
        <title>Scanner</title>
        <script src="https://cdn.tailwindcss.com"></script>
      </head>
      <body class="bg-gray-900 text-white flex flex-col items-center justify-start min-h-screen p-4">
        <div class="w-full max-w-md space-y-4">
          <div class="flex items-center justify-between">
            <h2 id="eventName" class="text-xl font-bold">Event</h2>
            <span id="live" class="text-xs px-2 py-1 rounded bg-gray-600">connecting…</span>
          </div>
          <video id="video" playsinline class="w-full max-h-[50vh] rounded-lg bg-black mb-4"></video>
          <canvas id="canvas" class="hidden"></canvas>
          <div id="result" class="rounded-lg p-4 text-center text-lg bg-gray-700">Initializing camera…</div>
          <div class="flex flex-wrap gap-2 justify-center">
            <button id="btnStop" class="bg-red-600 hover:bg-red-700 text-white rounded-lg px-4 py-3 w-full sm:w-auto">Stop</button>
            <button id="btnRestart" class="bg-blue-600 hover:bg-blue-700 text-white rounded-lg px-4 py-3 w-full sm:w-auto">Start</button>
          </div>
        </div>

        <script src="https://unpkg.com/jsqr/dist/jsQR.js"></script>
        <script>
          const COOLDOWN_MS = 2000;
          const deviceId = (crypto.randomUUID && crypto.randomUUID()) || String(Math.random()).slice(2);
          const video = document.getElementById('video');
          const canvas = document.getElementById('canvas');
          const ctx = canvas.getContext('2d');
          const resultEl = document.getElementById('result');
          const liveEl = document.getElementById('live');
          let stream = null, scanning = false, inFlight = false, lastScanTime = 0;

          function show(text, kind) {
            resultEl.textContent = text;
            const colors = {success: 'bg-green-600', error: 'bg-red-600', info: 'bg-gray-700'};
            resultEl.className = 'rounded-lg p-4 text-center text-lg ' + (colors[kind] || colors.info);
          }

          function playSound(type) {
            const AudioContext = window.AudioContext || window.webkitAudioContext;
            if (!AudioContext) return;
            const actx = new AudioContext();
            const osc = actx.createOscillator();
            const gain = actx.createGain();
            osc.connect(gain);
            gain.connect(actx.destination);
            osc.type = type === 'success' ? 'sine' : 'sawtooth';
            osc.frequency.setValueAtTime(type === 'success' ? 880 : 200, actx.currentTime);
            osc.start();
            gain.gain.exponentialRampToValueAtTime(0.00001, actx.currentTime + 0.5);
            osc.stop(actx.currentTime + 0.5);
          }

          function reportCameraError(detail) {
            fetch('/api/scanner/camera-error', {
              method: 'POST',
              headers: {'Content-Type': 'application/json'},
              body: JSON.stringify({device_id: deviceId, detail})
            }).catch(() => {});
          }

          async function startCamera() {
            if (scanning) return;
            if (!navigator.mediaDevices || !navigator.mediaDevices.getUserMedia) {
              show('Camera access denied or not supported.', 'error');
              reportCameraError('getUserMedia unavailable');
              return;
            }
            try {
              stream = await navigator.mediaDevices.getUserMedia({ video: { facingMode: "environment" } });
              video.srcObject = stream;
              await video.play();
              show('Scanning for QR — point camera at a ticket.', 'info');
              scanning = true;
              requestAnimationFrame(tick);
            } catch (err) {
              show('Camera access denied or not supported.', 'error');
              reportCameraError(err.name + ': ' + err.message);
            }
          }

          function stopCamera() {
            scanning = false;
            if (stream) {
              stream.getTracks().forEach(t => t.stop());
              stream = null;
            }
          }

          async function handleScan(ticketId) {
            const now = Date.now();
            if (inFlight || now - lastScanTime < COOLDOWN_MS) return;
            lastScanTime = now;
            inFlight = true;
            show(`Verifying ${ticketId}...`, 'info');
            try {
              const resp = await fetch('/api/scan', {
                method: 'POST',
                headers: {'Content-Type': 'application/json'},
                body: JSON.stringify({payload: ticketId, device_id: deviceId})
              });
              const data = await resp.json();
              if (!resp.ok) {
                show('Server error: ' + (data.detail || resp.statusText), 'error');
              } else if (data.result === 'granted') {
                playSound('success');
                show(data.message, 'success');
              } else if (data.result !== 'ignored') {
                playSound('error');
                show(data.message, 'error');
              }
            } catch (err) {
              show('Network error: ' + err.message, 'error');
            } finally {
              inFlight = false;
            }
          }

          function tick() {
            if (!scanning) return;
            if (video.readyState === video.HAVE_ENOUGH_DATA) {
              canvas.width = video.videoWidth;
              canvas.height = video.videoHeight;
              ctx.drawImage(video, 0, 0, canvas.width, canvas.height);
              const imgData = ctx.getImageData(0, 0, canvas.width, canvas.height);
              const code = jsQR(imgData.data, imgData.width, imgData.height, { inversionAttempts: "dontInvert" });
              if (code && code.data) handleScan(code.data.trim());
            }
            requestAnimationFrame(tick);
          }

          function connectFeed(delay) {
            const proto = location.protocol === 'https:' ? 'wss' : 'ws';
            const ws = new WebSocket(`${proto}://${location.host}/ws/tickets`);
            ws.onmessage = (ev) => {
              const msg = JSON.parse(ev.data);
              if (msg.type === 'hello') {
                liveEl.textContent = msg.connectivity === 'local' ? 'local' : 'live';
                liveEl.className = 'text-xs px-2 py-1 rounded bg-green-700';
              }
            };
            ws.onclose = () => {
              liveEl.textContent = 'offline';
              liveEl.className = 'text-xs px-2 py-1 rounded bg-yellow-600';
              setTimeout(() => connectFeed(Math.min(delay * 2, 30000)), delay);
            };
          }

          fetch('/api/settings').then(r => r.json()).then(s => {
            document.getElementById('eventName').textContent = s.event_name || 'Event';
          });
          document.getElementById('btnStop').addEventListener('click', () => { stopCamera(); show('Camera stopped.', 'info'); });
          document.getElementById('btnRestart').addEventListener('click', async () => { stopCamera(); await startCamera(); });
          document.addEventListener('visibilitychange', () => { if (document.hidden) stopCamera(); });
          window.addEventListener('pagehide', stopCamera);
          connectFeed(1000);
          startCamera();
        </script>
      </body>
    </html>
    """
    return HTMLResponse(html)


# -------------------
# --- APP ---
# -------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    app.state.ctx.stop()


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    config = config or AppConfig.from_env()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format=LOG_FORMAT,
    )
    config.data_dir.mkdir(parents=True, exist_ok=True)

    admin = AdminDatabase(config.admin_db_path)
    admin.ensure_user(config.admin_username, config.admin_password)
    admin.load_filters()

    ctx = AppContext.from_config(config)
    ctx.start()
    logger.info("Using %s backend in %s", config.backend, config.data_dir)

    app = FastAPI(
        title="QR Event Check-in",
        version=__version__,
        summary="Issue QR tickets and check guests in at the door",
        description="Organizers create tickets; door devices scan QR codes and admit each ticket once.",
        openapi_tags=[
            {"name": "Navigation", "description": "Pages"},
            {"name": "Tickets", "description": "Ticket registration and management"},
            {"name": "Scanning", "description": "Door check-in and live sync"},
            {"name": "QR", "description": "QR images and sharing"},
            {"name": "Settings", "description": "Event settings"},
            {"name": "Admin", "description": "Organizer tools"},
        ],
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.admin = admin
    app.state.ctx = ctx
    app.add_exception_handler(DomainError, domain_error_handler)
    app.include_router(router)
    return app


app = create_app()
