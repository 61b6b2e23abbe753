"""
HTTP API, WebSocket feed and media server hooks for streamhub (aiohttp).
"""

import asyncio
from datetime import datetime
from pathlib import Path

from aiohttp import WSMsgType, web

from .errors import NotFoundError, StreamHubError, ValidationError
from .events import Event, epoch_ms
from .hub import StreamHub
from .logger import get_logger
from .media_server import parse_publish_hook


HUB_KEY = web.AppKey("hub", StreamHub)

# Per-client WebSocket backlog; events beyond it are dropped for that client
WS_QUEUE_SIZE = 100

_logger = get_logger('api')


def _ok(**payload) -> web.Response:
    return web.json_response({'success': True, **payload})


def _error(status: int, message: str) -> web.Response:
    return web.json_response({'success': False, 'message': message}, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Map errors to success-flag envelopes."""
    try:
        return await handler(request)
    except StreamHubError as e:
        return _error(e.status, e.message)
    except web.HTTPException as e:
        if e.status < 400:
            raise
        return _error(e.status, e.reason)
    except Exception:
        _logger.exception(f"Unhandled error on {request.method} {request.path}")
        return _error(500, "Internal server error")


async def _json_body(request: web.Request) -> dict:
    try:
        data = await request.json()
    except ValueError:
        raise ValidationError("Request body must be valid JSON") from None
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


async def _hook_body(request: web.Request) -> dict:
    """Hook bodies are form encoded (nginx-rtmp) or JSON."""
    if request.content_type == 'application/json':
        return await _json_body(request)
    return dict(await request.post())


# Streams

async def list_streams(request: web.Request) -> web.Response:
    hub = request.app[HUB_KEY]
    return _ok(streams=[s.to_dict() for s in hub.query.streams()])


async def get_stats(request: web.Request) -> web.Response:
    hub = request.app[HUB_KEY]
    return _ok(stats=hub.query.stats())


async def stop_stream(request: web.Request) -> web.Response:
    hub = request.app[HUB_KEY]
    session = await hub.stop_stream(request.match_info['key'])
    return _ok(message="Stream stopped", stream=session.to_dict())


# Recordings

async def list_recordings(request: web.Request) -> web.Response:
    hub = request.app[HUB_KEY]
    return _ok(recordings=[r.to_dict() for r in hub.query.recordings()])


async def list_active_recordings(request: web.Request) -> web.Response:
    hub = request.app[HUB_KEY]
    return _ok(recordings=[r.to_dict() for r in hub.query.active_recordings()])


async def get_recording(request: web.Request) -> web.Response:
    hub = request.app[HUB_KEY]
    return _ok(recording=hub.query.recording(request.match_info['id']).to_dict())


async def delete_recording(request: web.Request) -> web.Response:
    hub = request.app[HUB_KEY]
    hub.recorder.delete(request.match_info['id'])
    return _ok(message="Recording deleted")


async def download_recording(request: web.Request) -> web.StreamResponse:
    hub = request.app[HUB_KEY]
    recording = hub.query.recording(request.match_info['id'])
    path = Path(recording.output_file)
    if not path.is_file():
        raise NotFoundError("Recording file not found")

    return web.FileResponse(
        path,
        headers={'Content-Disposition': f'attachment; filename="{recording.filename}"'}
    )


# Forwarding

async def list_destinations(request: web.Request) -> web.Response:
    hub = request.app[HUB_KEY]
    return _ok(destinations=[d.to_dict() for d in hub.query.destinations()])


async def get_destination(request: web.Request) -> web.Response:
    hub = request.app[HUB_KEY]
    return _ok(destination=hub.query.destination(request.match_info['id']).to_dict())


async def add_destination(request: web.Request) -> web.Response:
    hub = request.app[HUB_KEY]
    destination = hub.forwarder.add_destination(await _json_body(request))
    return _ok(destination=destination.to_dict())


async def update_destination(request: web.Request) -> web.Response:
    hub = request.app[HUB_KEY]
    destination = hub.forwarder.update_destination(
        request.match_info['id'], await _json_body(request)
    )
    return _ok(destination=destination.to_dict())


async def remove_destination(request: web.Request) -> web.Response:
    hub = request.app[HUB_KEY]
    hub.forwarder.remove_destination(request.match_info['id'])
    return _ok(message="Destination removed")


async def list_active_forwarding(request: web.Request) -> web.Response:
    hub = request.app[HUB_KEY]
    return _ok(forwarding=[t.to_dict() for t in hub.query.active_forwarding()])


async def list_presets(request: web.Request) -> web.Response:
    hub = request.app[HUB_KEY]
    return _ok(presets=hub.forwarder.presets())


async def get_config(request: web.Request) -> web.Response:
    hub = request.app[HUB_KEY]
    return _ok(config=hub.query.server_config())


async def health(request: web.Request) -> web.Response:
    hub = request.app[HUB_KEY]
    return web.json_response({
        'status': 'healthy',
        'timestamp': epoch_ms(datetime.now()),
        'uptime': hub.query.stats()['uptime'],
        'sessions': hub.registry.count(),
    })


# Media server hooks

async def hook_publish(request: web.Request) -> web.Response:
    hub = request.app[HUB_KEY]
    hook = parse_publish_hook(await _hook_body(request))
    session = hub.handle_publish_intent(hook)
    if session is None:
        return _error(403, "Publish rejected")
    return _ok(session=session.to_dict())


async def hook_publish_confirmed(request: web.Request) -> web.Response:
    hub = request.app[HUB_KEY]
    hook = parse_publish_hook(await _hook_body(request))
    hub.handle_publish_confirmed(hook)
    return _ok()


async def hook_publish_done(request: web.Request) -> web.Response:
    hub = request.app[HUB_KEY]
    hook = parse_publish_hook(await _hook_body(request))
    hub.handle_publish_end(hook.session_id)
    return _ok()


# WebSocket

async def _pump_events(ws: web.WebSocketResponse, queue: asyncio.Queue) -> None:
    while True:
        message = await queue.get()
        if ws.closed:
            return
        await ws.send_json(message)


async def websocket_feed(request: web.Request) -> web.WebSocketResponse:
    """Sends an active_streams snapshot, then every bridge event."""
    hub = request.app[HUB_KEY]
    ws = web.WebSocketResponse(heartbeat=30)
    await ws.prepare(request)

    queue: asyncio.Queue = asyncio.Queue(maxsize=WS_QUEUE_SIZE)

    def on_event(event: Event) -> None:
        try:
            queue.put_nowait(event.to_dict())
        except asyncio.QueueFull:
            _logger.debug(f"WebSocket client too slow, dropping {event.type}")

    # Snapshot and subscription happen without yielding, so no event is lost in between
    snapshot = [s.to_dict() for s in hub.query.streams() if s.is_live]
    unsubscribe = hub.bridge.subscribe(on_event)
    await ws.send_json({'type': 'active_streams', 'streams': snapshot})

    sender = asyncio.create_task(_pump_events(ws, queue))
    _logger.debug(f"WebSocket client connected ({hub.bridge.subscriber_count} subscribers)")
    try:
        async for msg in ws:
            if msg.type == WSMsgType.ERROR:
                _logger.warning(f"WebSocket error: {ws.exception()}")
                break
    finally:
        unsubscribe()
        sender.cancel()
        try:
            await sender
        except asyncio.CancelledError:
            pass
        except ConnectionResetError:
            _logger.debug("WebSocket client went away mid-send")

    return ws


def create_app(hub: StreamHub) -> web.Application:
    """Build the aiohttp application for a hub."""
    app = web.Application(middlewares=[error_middleware])
    app[HUB_KEY] = hub

    app.router.add_get("/api/streams", list_streams)
    app.router.add_get("/api/stats", get_stats)
    app.router.add_post("/api/streams/{key}/stop", stop_stream)

    app.router.add_get("/api/recordings", list_recordings)
    app.router.add_get("/api/recordings/active", list_active_recordings)
    app.router.add_get("/api/recordings/{id}", get_recording)
    app.router.add_delete("/api/recordings/{id}", delete_recording)
    app.router.add_get("/api/recordings/{id}/download", download_recording)

    app.router.add_get("/api/forwarding/destinations", list_destinations)
    app.router.add_post("/api/forwarding/destinations", add_destination)
    app.router.add_get("/api/forwarding/destinations/{id}", get_destination)
    app.router.add_put("/api/forwarding/destinations/{id}", update_destination)
    app.router.add_delete("/api/forwarding/destinations/{id}", remove_destination)
    app.router.add_get("/api/forwarding/active", list_active_forwarding)
    app.router.add_get("/api/forwarding/presets", list_presets)

    app.router.add_get("/api/config", get_config)
    app.router.add_get("/health", health)
    app.router.add_get("/ws", websocket_feed)

    app.router.add_post("/hooks/publish", hook_publish)
    app.router.add_post("/hooks/publish_confirmed", hook_publish_confirmed)
    app.router.add_post("/hooks/publish_done", hook_publish_done)

    return app
