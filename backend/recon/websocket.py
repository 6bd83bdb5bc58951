"""WebSocket real-time notifications using Socket.IO."""

import socketio
import logging
from typing import Dict, Set

from recon.events import EventPublisher

logger = logging.getLogger(__name__)

# Create Socket.IO async server
sio = socketio.AsyncServer(
    async_mode='asgi',
    cors_allowed_origins='*',
    logger=False,
    engineio_logger=False
)

# Track active connections
active_connections: Set[str] = set()


def get_socket_app(other_asgi_app=None):
    """Get the Socket.IO ASGI app for mounting."""
    return socketio.ASGIApp(
        sio,
        other_asgi_app=other_asgi_app,
        socketio_path='/socket.io'
    )


def attach_to_publisher(publisher: EventPublisher, server: socketio.AsyncServer = sio):
    """
    Register the Socket.IO server as an event subscriber.

    Every published event is broadcast to all connected clients under its
    event name. Returns the unsubscribe callable.
    """
    async def broadcast(event_name: str, payload: Dict) -> None:
        await server.emit(event_name, payload)

    return publisher.subscribe(broadcast)


def register_handlers(coordinator, server: socketio.AsyncServer = sio) -> None:
    """Bind client-facing Socket.IO events to the pipeline coordinator."""

    @server.event
    async def connect(sid, environ):
        """Handle client connection."""
        active_connections.add(sid)
        logger.info(f"Client connected: {sid}")

    @server.event
    async def disconnect(sid):
        """Handle client disconnection."""
        active_connections.discard(sid)
        logger.info(f"Client disconnected: {sid}")

    @server.on('startRecon')
    async def start_recon(sid, data):
        """Run full recon for a domain requested over the socket."""
        domain = (data or {}).get('domain')

        if not domain:
            await server.emit('reconUpdate', {
                'message': 'domain is required'
            }, room=sid)
            return

        logger.info(f"Starting recon for domain: {domain}")
        await server.emit('reconUpdate', {
            'message': f'Starting reconnaissance for {domain}...'
        }, room=sid)

        try:
            await coordinator.run_recon(domain)
        except Exception as e:
            # run_recon already broadcast the failure; answer the requester too
            logger.error(f"Error starting recon for {domain}: {e}")
            await server.emit('reconUpdate', {
                'message': f'Error starting reconnaissance: {e}'
            }, room=sid)


def get_connection_stats():
    """Get statistics about active connections."""
    return {
        'total_connections': len(active_connections),
    }
