"""Room coordinators and the registry that owns them.

Each room is an independent unit: its own message store, settings, presence
map, expiry timers and worker task. Nothing is shared across rooms.

Single-writer model:
    Every inbound frame, connect, disconnect and expiry timer becomes an event
    on the room's asyncio queue. One worker task drains the queue, applies the
    event's (synchronous) state transition, delivers the resulting outbox in
    order, and snapshots whatever changed. Handlers for the same room never
    interleave, so every connection observes broadcasts in the same order.

Thread Safety:
    This implementation is designed for async/await usage with a single event loop.
    It is NOT thread-safe for concurrent access from multiple threads.
"""
import asyncio
import contextlib
import logging
import uuid
from typing import Callable, Dict, List, Optional, Set, Tuple, Union, get_args, get_origin

from fastapi import WebSocket

from chatroom.config import AppConfig, get_config

from . import ephemeral, moderation, reactions, threads
from .errors import NotFoundRejection, PolicyRejection, RoomError
from .persistence import SnapshotStore
from .presence import PresenceTracker
from .protocol import (
    AdminUpdateRequest,
    ConfirmViewAction,
    CreateThreadAction,
    DeleteAction,
    GetSettingsRequest,
    InboundFrame,
    JoinAction,
    LeaveAction,
    MediaSubmission,
    RateAction,
    ReactAction,
    ReadAction,
    ReplyInThreadAction,
    SystemAction,
    TextSubmission,
    TypingAction,
    ViewAction,
    error_frame,
    parse_frame,
    settings_update,
    system_info,
)
from .schemas import AdminSettings, BaseMessage, UserState, now_ms
from .state import Outbox, RoomState
from .store import MessageStore

logger = logging.getLogger(__name__)

Handler = Callable[[Outbox], None]


def frame_types(annotation=InboundFrame) -> Set[type]:
    """Flatten the inbound union into its concrete frame models."""
    args = get_args(annotation)
    if not args:
        return {annotation}
    if get_origin(annotation) is Union:
        members = args
    else:  # Annotated[Union[...], Field(...)]
        members = args[:1]
    found: Set[type] = set()
    for member in members:
        found |= frame_types(member)
    return found


class Connection:
    """A live client connection with its gateway-assigned identity."""

    def __init__(self, websocket: WebSocket, connection_id: Optional[str] = None) -> None:
        self.websocket = websocket
        # SECURITY: identity is generated on the server, never client-provided
        self.id = connection_id or str(uuid.uuid4())

    async def send(self, payload: dict) -> bool:
        """Send a frame; returns False if the connection is dead."""
        try:
            await self.websocket.send_json(payload)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection {self.id}: {e}")
            return False


class Room:
    """Coordinator for one room. All state changes run on its worker task."""

    def __init__(
        self,
        room_id: str,
        settings: AdminSettings,
        admin_password: str,
        snapshots: Optional[SnapshotStore] = None,
        dedup_cache_size: int = 10000,
    ) -> None:
        self.room_id = room_id
        self.snapshots = snapshots
        self.state = RoomState(
            room_id=room_id,
            admin_password=admin_password,
            settings=settings,
            store=MessageStore(
                max_history=settings.maxMessageHistory,
                dedup_cache_size=dedup_cache_size,
                on_prune=self._on_prune,
            ),
            presence=PresenceTracker(),
        )
        self.connections: Dict[str, Connection] = {}
        self.expiry = ephemeral.ExpiryScheduler(self._post_expiry)

        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._closed = False

        # Every inbound frame model maps to exactly one handler
        self._handlers: Dict[type, Callable] = {
            TextSubmission: self._handle_submission,
            MediaSubmission: self._handle_submission,
            JoinAction: self._handle_join,
            LeaveAction: self._handle_leave,
            TypingAction: self._handle_typing,
            ReadAction: self._handle_read,
            ReactAction: self._handle_react,
            RateAction: self._handle_rate,
            DeleteAction: self._handle_delete,
            ViewAction: self._handle_view,
            ConfirmViewAction: self._handle_confirm_view,
            CreateThreadAction: self._handle_create_thread,
            ReplyInThreadAction: self._handle_reply_in_thread,
            GetSettingsRequest: self._handle_get_settings,
            AdminUpdateRequest: self._handle_admin_update,
        }
        missing = frame_types() - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for frame types: {sorted(t.__name__ for t in missing)}")

    @property
    def settings(self) -> AdminSettings:
        return self.state.settings

    @property
    def store(self) -> MessageStore:
        return self.state.store

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def idle(self) -> bool:
        """No live connections are left in the room."""
        return not self.connections

    def restore(self, messages: List[BaseMessage]) -> None:
        """Load snapshot messages. Expiry timers are armed when the worker starts."""
        self.state.store.load(messages)
        logger.info(f"[Room] {self.room_id} restored {len(self.state.store)} message(s)")

    # =========================================================================
    # Event queue
    # =========================================================================

    def _ensure_worker(self) -> None:
        loop = asyncio.get_running_loop()
        if self._worker is not None and not self._worker.done() and self._loop is loop:
            return
        self._loop = loop
        self._queue = asyncio.Queue()
        self._worker = loop.create_task(self._drain(), name=f"room-{self.room_id}")
        self._arm_restored_expiries()

    async def submit(self, handler: Handler, origin: Optional[str] = None) -> None:
        """Queue an event and wait until it has been applied and delivered."""
        if self._closed:
            logger.debug(f"[Room] {self.room_id} is closed; event dropped")
            return
        self._ensure_worker()
        done = self._loop.create_future()
        self._queue.put_nowait((handler, origin, done))
        await done

    def post(self, handler: Handler, origin: Optional[str] = None) -> None:
        """Queue an event without waiting (used by timers)."""
        if self._closed:
            return
        self._ensure_worker()
        self._queue.put_nowait((handler, origin, None))

    async def _drain(self) -> None:
        while True:
            handler, origin, done = await self._queue.get()
            try:
                outbox = Outbox(origin)
                self._apply(handler, outbox)
                await self._deliver(outbox)
                self._snapshot()
            except Exception:
                logger.exception(f"[Room] {self.room_id} event failed")
            finally:
                if done is not None and not done.done():
                    done.set_result(None)
                self._queue.task_done()

    def _apply(self, handler: Handler, outbox: Outbox) -> None:
        """Run one state transition, converting failures into a unicast error."""
        try:
            handler(outbox)
        except RoomError as e:
            logger.warning(f"[Room] {self.room_id} rejected frame from {outbox.origin}: {e}")
            outbox.reply(error_frame(str(e)))
        except Exception as e:
            logger.exception(f"[Room] {self.room_id} handler error for {outbox.origin}: {e}")
            outbox.reply(error_frame("Internal error while processing the request"))

    async def _deliver(self, outbox: Outbox) -> None:
        for delivery in outbox.deliveries:
            if delivery.target is None:
                await self.broadcast(delivery.payload)
                continue
            conn = self.connections.get(delivery.target)
            if conn is not None and not await conn.send(delivery.payload):
                self._drop_connection(conn.id)

    async def broadcast(self, payload: dict) -> None:
        """Send a frame to every connection in the room concurrently.

        Connections whose send fails are removed from the room.
        """
        connections = list(self.connections.values())
        if not connections:
            return
        results = await asyncio.gather(
            *[conn.send(payload) for conn in connections],
            return_exceptions=True
        )
        for conn, success in zip(connections, results):
            if success is not True:
                self._drop_connection(conn.id)

    def _drop_connection(self, connection_id: str) -> None:
        if self.connections.pop(connection_id, None) is not None:
            logger.debug(f"Removed dead connection {connection_id} from room {self.room_id}")

    def _snapshot(self) -> None:
        state = self.state
        if self.snapshots is not None:
            if state.settings_dirty:
                self.snapshots.save_settings(self.room_id, state.settings)
            if state.messages_dirty:
                self.snapshots.save_messages(self.room_id, state.store.messages)
        state.settings_dirty = False
        state.messages_dirty = False

    async def close(self) -> None:
        """Stop the worker and cancel all expiry timers.

        A closed room drops every later event, so a socket that disconnects
        after shutdown cannot restart the worker.
        """
        if self._closed:
            return
        self._closed = True
        self.expiry.cancel_all()
        if self._worker is not None:
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError, RuntimeError):
                await self._worker
        # Release callers still waiting on events that will never run
        while self._queue is not None and not self._queue.empty():
            _, _, done = self._queue.get_nowait()
            if done is not None and not done.done():
                done.set_result(None)
        self._worker = None
        self._queue = None
        self._snapshot()

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def connect(self, conn: Connection) -> None:
        await self.submit(lambda outbox: self._on_connect(conn, outbox), origin=conn.id)

    async def handle_text(self, conn: Connection, raw: str) -> None:
        await self.submit(lambda outbox: self._on_frame(conn, raw, outbox), origin=conn.id)

    async def disconnect(self, conn: Connection) -> None:
        await self.submit(lambda outbox: self._on_disconnect(conn, outbox))

    def _on_connect(self, conn: Connection, outbox: Outbox) -> None:
        self.connections[conn.id] = conn
        logger.info(
            f"[Room] {conn.id} connected to {self.room_id}; "
            f"{len(self.connections)} connection(s), replaying {len(self.store)} message(s)"
        )
        # Late joiners get the full history, hidden messages included
        for message in self.store:
            outbox.reply(message.to_wire())
        outbox.reply(self._user_list_frame())
        outbox.reply(settings_update(self.settings))

    def _on_disconnect(self, conn: Connection, outbox: Outbox) -> None:
        self.connections.pop(conn.id, None)
        if self.state.presence.leave(conn.id) is not None:
            outbox.broadcast(self._user_list_frame())
        logger.info(f"[Room] {conn.id} disconnected from {self.room_id}")

    def _on_frame(self, conn: Connection, raw: str, outbox: Outbox) -> None:
        frame = parse_frame(raw)
        self.state.presence.touch(conn.id)
        self._handlers[type(frame)](conn, frame, outbox)

    # =========================================================================
    # Timers
    # =========================================================================

    def _post_expiry(self, message_id: str) -> None:
        self.post(lambda outbox: ephemeral.expire(self.state, message_id, outbox))

    def _arm_restored_expiries(self) -> None:
        now = now_ms()
        for message in self.store:
            if message.expiresAt is None or message.isHidden or message.id in self.expiry:
                continue
            if message.expiresAt <= now:
                ephemeral.hide(message, ephemeral.REASON_EXPIRED, None)
                self.state.messages_dirty = True
            else:
                self.expiry.schedule(message.id, message.expiresAt)

    def _on_prune(self, removed: List[BaseMessage]) -> None:
        removed_ids = {m.id for m in removed}
        for message_id in removed_ids:
            self.expiry.cancel(message_id)
        self.state.confirmed_views = {
            pair for pair in self.state.confirmed_views if pair[0] not in removed_ids
        }

    # =========================================================================
    # Helpers
    # =========================================================================

    def _user_list_frame(self) -> dict:
        return system_info(SystemAction.USER_LIST, users=self.state.presence.user_list(self.store))

    def _require_joined(self, conn: Connection) -> UserState:
        user = self.state.presence.get(conn.id)
        if user is None:
            raise PolicyRejection("You must join the room first")
        return user

    # =========================================================================
    # Frame handlers
    # =========================================================================

    def _handle_submission(
        self, conn: Connection, frame: Union[TextSubmission, MediaSubmission], outbox: Outbox
    ) -> None:
        if self.store.is_duplicate(frame.id):
            logger.debug(f"[Room] Duplicate message ignored: {frame.id}")
            return

        sender = self.state.presence.get(conn.id)
        message = moderation.accept_message(self.state, frame, sender)
        self.store.append(message)
        self.state.messages_dirty = True

        # Thread tagging happens before the broadcast so the message frame
        # already carries its threadId; the thread update follows it.
        thread_outbox = Outbox(outbox.origin)
        if frame.threadId:
            threads.reply_in_thread(self.state, message.id, frame.threadId, thread_outbox)

        outbox.broadcast(message.to_wire())
        outbox.deliveries.extend(thread_outbox.deliveries)

        if message.expiresAt is not None:
            self.expiry.schedule(message.id, message.expiresAt)
        logger.info(f"[Room] {self.room_id} accepted {message.type} message {message.id} from {sender.userId}")

    def _handle_join(self, conn: Connection, frame: JoinAction, outbox: Outbox) -> None:
        self.state.presence.join(conn.id, frame.sender.strip(), frame.userId)
        outbox.broadcast(self._user_list_frame())
        if self.settings.welcomeMessage:
            outbox.reply(system_info(SystemAction.WELCOME, text=self.settings.welcomeMessage))

    def _handle_leave(self, conn: Connection, frame: LeaveAction, outbox: Outbox) -> None:
        self._require_joined(conn)
        self.state.presence.leave(conn.id)
        outbox.broadcast(self._user_list_frame())

    def _handle_typing(self, conn: Connection, frame: TypingAction, outbox: Outbox) -> None:
        self._require_joined(conn)
        if self.state.presence.set_typing(conn.id, frame.isTyping):
            outbox.broadcast(self._user_list_frame())

    def _handle_read(self, conn: Connection, frame: ReadAction, outbox: Outbox) -> None:
        user = self._require_joined(conn)
        reactions.mark_read(self.state, frame.targetMessageId, user.userId, outbox)

    def _handle_react(self, conn: Connection, frame: ReactAction, outbox: Outbox) -> None:
        user = self._require_joined(conn)
        if not self.settings.allowReactions:
            raise PolicyRejection("Reactions are disabled in this room")
        reactions.toggle_reaction(self.state, frame.targetMessageId, user.userId, frame.reaction, outbox)

    def _handle_rate(self, conn: Connection, frame: RateAction, outbox: Outbox) -> None:
        user = self._require_joined(conn)
        reactions.rate(self.state, frame.targetMessageId, user.userId, frame.rating, outbox)

    def _handle_delete(self, conn: Connection, frame: DeleteAction, outbox: Outbox) -> None:
        # Admin path: authorized by the shared secret, joining is not required
        moderation.check_admin_password(self.state, frame.password)
        removed = self.store.remove(frame.targetMessageId)
        if removed is None:
            raise NotFoundRejection(frame.targetMessageId)

        self.expiry.cancel(removed.id)
        self._on_prune([removed])
        self.state.messages_dirty = True
        logger.info(f"[Room] {self.room_id} admin deleted message {removed.id}")
        outbox.broadcast(system_info(SystemAction.MESSAGE_DELETED, targetMessageId=removed.id))
        if removed.ratingScore != 0:
            reactions.refresh_ranking(self.state, removed.userId, outbox)

    def _handle_view(self, conn: Connection, frame: ViewAction, outbox: Outbox) -> None:
        user = self._require_joined(conn)
        ephemeral.view_message(self.state, frame.targetMessageId, user.userId, outbox)

    def _handle_confirm_view(self, conn: Connection, frame: ConfirmViewAction, outbox: Outbox) -> None:
        user = self._require_joined(conn)
        ephemeral.view_message(self.state, frame.targetMessageId, user.userId, outbox, confirmed=True)

    def _handle_create_thread(self, conn: Connection, frame: CreateThreadAction, outbox: Outbox) -> None:
        self._require_joined(conn)
        threads.create_thread(self.state, frame.targetMessageId, outbox)

    def _handle_reply_in_thread(self, conn: Connection, frame: ReplyInThreadAction, outbox: Outbox) -> None:
        self._require_joined(conn)
        threads.reply_in_thread(self.state, frame.targetMessageId, frame.threadId, outbox)

    def _handle_get_settings(self, conn: Connection, frame: GetSettingsRequest, outbox: Outbox) -> None:
        outbox.reply(settings_update(self.settings))

    def _handle_admin_update(self, conn: Connection, frame: AdminUpdateRequest, outbox: Outbox) -> None:
        moderation.update_settings(self.state, frame.settings, frame.password, outbox)


# =============================================================================
# Registry
# =============================================================================


class RoomManager:
    """Creates rooms on first use and tears them all down on shutdown.

    Note:
        This is a singleton-style global instance. All WebSocket handlers
        share the same RoomManager to maintain consistent state.
    """

    def __init__(self, config: Optional[AppConfig] = None) -> None:
        self._config = config
        # room_id -> Room
        self.rooms: Dict[str, Room] = {}

    @property
    def config(self) -> AppConfig:
        return self._config or get_config()

    def _snapshots(self) -> Optional[SnapshotStore]:
        persistence = self.config.persistence
        if not persistence.enabled:
            return None
        try:
            return SnapshotStore.get_instance(persistence.db_path)
        except Exception as e:
            logger.error(f"[Manager] Snapshot store unavailable, running in memory only: {e}")
            return None

    def _default_settings(self) -> AdminSettings:
        defaults = self.config.room
        return AdminSettings(
            welcomeMessage=defaults.welcome_message,
            allowMediaUploads=defaults.allow_media_uploads,
            allowReactions=defaults.allow_reactions,
            bannedWords=list(defaults.banned_words),
            maxMessageHistory=defaults.max_message_history,
        )

    def get_room(self, room_id: str) -> Room:
        """Return the live room, creating it (and loading its snapshot) on first use."""
        room = self.rooms.get(room_id)
        if room is not None:
            return room

        config = self.config
        snapshots = self._snapshots()
        settings = self._default_settings()
        if snapshots is not None:
            settings = snapshots.load_settings(room_id) or settings

        room = Room(
            room_id,
            settings=settings,
            admin_password=config.admin_password,
            snapshots=snapshots,
            dedup_cache_size=config.room.dedup_cache_size,
        )
        if snapshots is not None:
            room.restore(snapshots.load_messages(room_id))

        self.rooms[room_id] = room
        logger.info(f"[Manager] Room {room_id} created")
        return room

    # =========================================================================
    # Read-only access (never creates a room)
    # =========================================================================

    def history_store(self, room_id: str) -> MessageStore:
        """Message history of a live room, else of its snapshot, else empty."""
        room = self.rooms.get(room_id)
        if room is not None:
            return room.store
        snapshots = self._snapshots()
        messages = snapshots.load_messages(room_id) if snapshots is not None else []
        store = MessageStore(max_history=len(messages))
        store.load(messages)
        return store

    def room_settings(self, room_id: str) -> AdminSettings:
        """Settings of a live room, else of its snapshot, else the configured defaults."""
        room = self.rooms.get(room_id)
        if room is not None:
            return room.settings
        snapshots = self._snapshots()
        saved = snapshots.load_settings(room_id) if snapshots is not None else None
        return saved or self._default_settings()

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def connect(self, websocket: WebSocket, room_id: str) -> Tuple[Room, Connection]:
        """Accept a WebSocket, assign its identity and register it in the room."""
        await websocket.accept()
        conn = Connection(websocket)
        while True:
            room = self.get_room(room_id)
            await room.connect(conn)
            # The room may have been evicted while the connect was queued
            if not room.closed:
                return room, conn
            if self.rooms.get(room_id) is room:
                del self.rooms[room_id]

    async def disconnect(self, room: Room, conn: Connection) -> None:
        """Remove a connection; evict the room once nobody is left in it.

        Without snapshots an idle room is kept while it still holds messages,
        so reconnecting clients get the history replayed.
        """
        await room.disconnect(conn)
        if not room.idle or self.rooms.get(room.room_id) is not room:
            return
        if room.snapshots is None and len(room.store) > 0:
            return
        logger.info(f"[Manager] Room {room.room_id} is empty; evicting")
        await self.close_room(room.room_id)

    async def close_room(self, room_id: str) -> None:
        room = self.rooms.pop(room_id, None)
        if room is not None:
            await room.close()

    async def close_all(self) -> None:
        for room_id in list(self.rooms):
            await self.close_room(room_id)


# Global singleton instance used by all WebSocket handlers
manager = RoomManager()
