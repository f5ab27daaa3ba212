from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from routers.rooms import rooms_router
from backend import RegistryStore, build_store
from registry import RoomRegistry
from relay import SignalingRelay
from constants import INSTANCE_ID
from schemas.messages import (
    ConnectedData,
    ConnectedMessage,
    ErrorData,
    ErrorMessage,
    IdentifyMessage,
    InvalidMessage,
    JoinMessage,
    LeaveMessage,
    WireModel,
    encode,
    parse_client_message,
)
import uuid
import json
import asyncio
from typing import Dict, Optional
from logging_config import get_logger, setup_logging
import os

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


class ConnectionGateway:
    """Owns the websocket of every client connected to this instance.

    Connection ids are assigned here. Room membership is delegated to the
    registry and negotiation traffic to the relay; both reach clients only
    through ``deliver``.
    """

    def __init__(self, store: RegistryStore, instance_id: str = INSTANCE_ID):
        self.store = store
        self.instance_id = instance_id
        # Format: {connection_id: websocket}, local to this instance
        self.connections: Dict[str, WebSocket] = {}
        # Frames to one connection leave in the order they were handed over
        self.send_locks: Dict[str, asyncio.Lock] = {}
        self.registry = RoomRegistry(store, self.deliver)
        self.relay = SignalingRelay(self.deliver)
        self.listener_task: Optional[asyncio.Task] = None

    async def connect(self, websocket: WebSocket) -> str:
        await websocket.accept()
        connection_id = str(uuid.uuid4())
        self.connections[connection_id] = websocket
        self.send_locks[connection_id] = asyncio.Lock()
        self.store.register_connection(connection_id, self.instance_id)
        logger.info(f"Connection {connection_id} opened ({len(self.connections)} local connections)")

        if self.store.shared and (self.listener_task is None or self.listener_task.done()):
            self.listener_task = asyncio.create_task(self.listen_for_remote_deliveries())

        await self.deliver(connection_id, ConnectedMessage(data=ConnectedData(connection_id=connection_id)))
        return connection_id

    async def handle(self, connection_id: str, message):
        if isinstance(message, IdentifyMessage):
            self.store.set_identity(connection_id, message.data.user_id)
            logger.info(f"Connection {connection_id} identified as {message.data.user_id}")
        elif isinstance(message, JoinMessage):
            # A join without userId is announced under the identified user
            user_id = message.data.user_id or self.store.get_identity(connection_id)
            await self.registry.join(message.data.room_id, connection_id, user_id)
        elif isinstance(message, LeaveMessage):
            await self.registry.leave(message.data.room_id, connection_id)
        else:
            await self.relay.forward(connection_id, message)

    async def disconnect(self, connection_id: str) -> bool:
        """Clean up after a closed transport. Only the first call has any effect."""
        if self.connections.pop(connection_id, None) is None:
            return False
        self.send_locks.pop(connection_id, None)
        try:
            await self.registry.disconnect_cleanup(connection_id)
        finally:
            self.store.unregister_connection(connection_id)
        logger.info(f"Connection {connection_id} closed ({len(self.connections)} local connections)")

        if not self.connections and self.listener_task is not None:
            self.listener_task.cancel()
            self.listener_task = None
        return True

    async def deliver(self, connection_id: str, message: WireModel) -> bool:
        frame = encode(message)
        if connection_id in self.connections:
            return await self.send_frame(connection_id, frame)
        if not self.store.shared:
            return False
        instance_id = self.store.instance_for(connection_id)
        if not instance_id or instance_id == self.instance_id:
            return False
        return self.store.publish_to_instance(instance_id, {"to": connection_id, "frame": frame})

    async def send_frame(self, connection_id: str, frame: str) -> bool:
        websocket = self.connections.get(connection_id)
        lock = self.send_locks.get(connection_id)
        if websocket is None or lock is None:
            return False
        try:
            async with lock:
                await websocket.send_text(frame)
            return True
        except Exception as e:
            # The socket is closing; its own handler will run the cleanup
            logger.warning(f"Error sending to connection {connection_id}: {e}")
            return False

    async def listen_for_remote_deliveries(self):
        """Deliver frames published by other instances to local connections."""
        logger.info(f"Starting Redis delivery listener for instance: {self.instance_id}")
        pubsub = None
        try:
            pubsub = self.store.subscribe_to_instance(self.instance_id)
            loop = asyncio.get_event_loop()

            while self.connections:
                def get_message():
                    """Blocking call to get next message from Redis pub/sub with timeout."""
                    return pubsub.get_message(timeout=1.0, ignore_subscribe_messages=True)

                message = await loop.run_in_executor(None, get_message)
                if message is None or message.get("type") != "message":
                    continue
                try:
                    payload = json.loads(message["data"])
                    await self.send_frame(payload["to"], payload["frame"])
                except (json.JSONDecodeError, KeyError, TypeError) as e:
                    logger.error(f"Malformed delivery on instance channel {self.instance_id}: {e}")
        except asyncio.CancelledError:
            logger.info(f"Redis delivery listener cancelled for instance: {self.instance_id}")
            raise
        except Exception as e:
            logger.error(f"Error in Redis delivery listener for instance {self.instance_id}: {e}", exc_info=True)
        finally:
            if pubsub:
                try:
                    pubsub.close()
                except Exception as e:
                    logger.error(f"Error closing pub/sub for instance {self.instance_id}: {e}")

    async def shutdown(self):
        if self.listener_task is not None:
            self.listener_task.cancel()
            try:
                await self.listener_task
            except asyncio.CancelledError:
                pass
            self.listener_task = None
        self.store.close()


async def websocket_endpoint(websocket: WebSocket):
    """Signaling channel. One connection per client, JSON ``{event, data}`` frames."""
    gateway: ConnectionGateway = websocket.app.state.gateway
    connection_id = None
    try:
        connection_id = await gateway.connect(websocket)
        while True:
            data = await websocket.receive_text()
            try:
                message = parse_client_message(data)
            except InvalidMessage as e:
                logger.warning(f"Rejected message from connection {connection_id}: {e}")
                await gateway.deliver(connection_id, ErrorMessage(data=ErrorData(detail=str(e))))
                continue
            logger.debug(f"Received {message.event} from connection {connection_id}")
            await gateway.handle(connection_id, message)
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected for connection {connection_id}")
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection_id}: {e}", exc_info=True)
        try:
            await websocket.close()
        except Exception as close_error:
            logger.debug(f"Error closing WebSocket: {close_error}")
    finally:
        if connection_id:
            await gateway.disconnect(connection_id)


async def health(request: Request):
    gateway: ConnectionGateway = request.app.state.gateway
    return {
        "status": "ok",
        "instance_id": gateway.instance_id,
        "connections": len(gateway.connections),
    }


def create_app(gateway: Optional[ConnectionGateway] = None) -> FastAPI:
    if gateway is None:
        gateway = ConnectionGateway(build_store())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await gateway.shutdown()

    app = FastAPI(title="Consultation call signaling", lifespan=lifespan)

    # Configure CORS to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.gateway = gateway
    app.include_router(rooms_router)
    app.add_api_route("/health", health, methods=["GET"])
    app.add_api_websocket_route("/ws", websocket_endpoint)

    logger.info(f"FastAPI application initialized (instance {gateway.instance_id})")
    return app


app = create_app()
